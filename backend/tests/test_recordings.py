from pathlib import Path

from researchhub.config import settings


def _session(client, make_user, make_study):
    researcher = make_user('researcher')
    participant = make_user('participant')
    study = make_study(researcher)
    sid = client.post(f"/studies/{study['id']}/sessions", headers=participant['headers']).json()['id']
    return researcher, participant, study, sid


def test_upload_list_download_and_delete(client, make_user, make_study):
    researcher, participant, study, sid = _session(client, make_user, make_study)
    payload = b'\x1aE\xdf\xa3' + b'0' * 256
    r = client.post(f'/sessions/{sid}/recordings', headers=participant['headers'],
                    files={'file': ('screen.webm', payload, 'video/webm')}, data={'duration_seconds': '12.5'})
    assert r.status_code == 201
    rec = r.json()
    assert rec['size_bytes'] == len(payload)
    assert rec['duration_seconds'] == 12.5
    assert rec['study_id'] == study['id']

    by_study = client.get('/recordings', headers=researcher['headers'], params={'study_id': study['id']}).json()
    assert [x['id'] for x in by_study] == [rec['id']]
    mine = client.get('/recordings', headers=participant['headers']).json()
    assert [x['id'] for x in mine] == [rec['id']]
    assert client.get('/recordings', headers=researcher['headers']).status_code == 400

    outsider = make_user('researcher')
    assert client.get(f"/recordings/{rec['id']}", headers=outsider['headers']).status_code == 404

    dl = client.get(f"/recordings/{rec['id']}/download", headers=researcher['headers'])
    assert dl.status_code == 200
    assert dl.content == payload

    stored = list((Path(settings.STORAGE_DIR) / 'recordings' / str(study['id'])).iterdir())
    assert len(stored) == 1
    assert client.delete(f"/recordings/{rec['id']}", headers=researcher['headers']).status_code == 204
    assert not stored[0].exists()
    assert client.get(f"/recordings/{rec['id']}", headers=researcher['headers']).status_code == 404


def test_upload_rejects_bad_type_and_size(client, make_user, make_study, monkeypatch):
    _, participant, _, sid = _session(client, make_user, make_study)
    h = participant['headers']
    wrong = client.post(f'/sessions/{sid}/recordings', headers=h, files={'file': ('a.txt', b'hello', 'text/plain')})
    assert wrong.status_code == 415
    bad_name = client.post(f'/sessions/{sid}/recordings', headers=h, files={'file': ('.hidden.webm', b'x', 'video/webm')})
    assert bad_name.status_code == 400

    monkeypatch.setattr(settings, 'MAX_RECORDING_BYTES', 8)
    big = client.post(f'/sessions/{sid}/recordings', headers=h, files={'file': ('a.webm', b'0' * 64, 'video/webm')})
    assert big.status_code == 413

    other = make_user('participant')
    foreign = client.post(f'/sessions/{sid}/recordings', headers=other['headers'],
                          files={'file': ('a.webm', b'0', 'video/webm')})
    assert foreign.status_code == 404
