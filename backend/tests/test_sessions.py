import io
from pathlib import Path

from PIL import Image

from researchhub.config import settings


def _block(study, block_type):
    return next(b for b in study['blocks'] if b['type'] == block_type)


def _make_png() -> bytes:
    img = Image.new("RGB", (32, 16), "white")
    bio = io.BytesIO()
    img.save(bio, format="PNG")
    return bio.getvalue()


def test_start_session_resumes_active_one(client, make_user, make_study):
    researcher = make_user('researcher')
    participant = make_user('participant')
    study = make_study(researcher)
    first = client.post(f"/studies/{study['id']}/sessions", headers=participant['headers'])
    assert first.status_code == 201
    again = client.post(f"/studies/{study['id']}/sessions", headers=participant['headers'])
    assert again.status_code == 200
    assert again.json()['id'] == first.json()['id']

    draft = make_study(researcher, activate=False)
    assert client.post(f"/studies/{draft['id']}/sessions", headers=participant['headers']).status_code == 409


def test_session_requires_accepted_application(client, make_user, make_study):
    researcher = make_user('researcher')
    participant = make_user('participant')
    study = make_study(researcher, settings={'requires_application': True})
    h = participant['headers']
    assert client.post(f"/studies/{study['id']}/sessions", headers=h).status_code == 403
    app = client.post(f"/studies/{study['id']}/apply", headers=h).json()
    assert client.post(f"/studies/{study['id']}/sessions", headers=h).status_code == 403
    client.put(f"/applications/{app['id']}/review", headers=researcher['headers'], json={'status': 'accepted'})
    assert client.post(f"/studies/{study['id']}/sessions", headers=h).status_code == 201


def test_submit_responses_and_complete(client, make_user, make_study):
    researcher = make_user('researcher')
    participant = make_user('participant')
    study = make_study(researcher)
    h = participant['headers']
    sid = client.post(f"/studies/{study['id']}/sessions", headers=h).json()['id']
    mc = _block(study, 'multiple_choice')
    scale = _block(study, 'opinion_scale')

    bad = client.post(f'/sessions/{sid}/responses', headers=h, json={'block_id': mc['id'], 'response': 'Purple'})
    assert bad.status_code == 400
    assert client.post(f'/sessions/{sid}/responses', headers=h, json={'block_id': mc['id']}).status_code == 400
    negative = client.post(f'/sessions/{sid}/responses', headers=h,
                           json={'block_id': mc['id'], 'response': 'Red', 'time_spent': -1})
    assert negative.status_code == 400

    ok = client.post(f'/sessions/{sid}/responses', headers=h, json={'block_id': mc['id'], 'response': 'Red', 'time_spent': 3.5})
    assert ok.status_code == 200
    assert ok.json()['saved'] is True
    assert ok.json()['study_completed'] is False
    # resubmitting the same block overwrites the answer
    again = client.post(f'/sessions/{sid}/responses', headers=h, json={'block_id': mc['id'], 'response': 'Blue'})
    assert again.json()['total_responses'] == 1

    client.post(f'/sessions/{sid}/responses', headers=h, json={'block_id': scale['id'], 'response': 4})
    done = client.post(f'/sessions/{sid}/responses', headers=h,
                       json={'block_id': _block(study, 'thank_you')['id'], 'response': {}})
    assert done.json()['study_completed'] is True
    assert done.json()['completion_message']

    late = client.post(f'/sessions/{sid}/responses', headers=h, json={'block_id': mc['id'], 'response': 'Red'})
    assert late.status_code == 409

    detail = client.get(f'/sessions/{sid}', headers=researcher['headers']).json()
    assert detail['status'] == 'completed'
    answers = {r['block_id']: r['response'] for r in detail['responses']}
    assert answers[mc['id']] == 'Blue'
    assert answers[scale['id']] == 4


def test_non_finite_numbers_are_rejected_and_results_stay_readable(client, make_user, make_study):
    researcher = make_user('researcher')
    participant = make_user('participant')
    study = make_study(researcher)
    h = dict(participant['headers'], **{'Content-Type': 'application/json'})
    sid = client.post(f"/studies/{study['id']}/sessions", headers=participant['headers']).json()['id']
    scale = _block(study, 'opinion_scale')
    mc = _block(study, 'multiple_choice')

    # raw bodies: the json= helper refuses to encode NaN
    bodies = [
        '{"block_id": %d, "response": NaN}' % scale['id'],
        '{"block_id": %d, "response": Infinity}' % scale['id'],
        '{"block_id": %d, "response": "Red", "time_spent": Infinity}' % mc['id'],
        '{"block_id": %d, "response": "Red", "time_spent": NaN}' % mc['id'],
        '{"block_id": %d, "response": "Red", "metadata": {"x": NaN}}' % mc['id'],
    ]
    for body in bodies:
        r = client.post(f'/sessions/{sid}/responses', headers=h, content=body)
        assert r.status_code == 400, body

    assert client.get(f'/sessions/{sid}', headers=participant['headers']).json()['responses'] == []
    results = client.get(f"/studies/{study['id']}/results", headers=researcher['headers'])
    assert results.status_code == 200


def test_response_ownership_and_block_checks(client, make_user, make_study, monkeypatch):
    researcher = make_user('researcher')
    participant = make_user('participant')
    intruder = make_user('participant')
    study = make_study(researcher)
    other_study = make_study(researcher)
    sid = client.post(f"/studies/{study['id']}/sessions", headers=participant['headers']).json()['id']
    mc = _block(study, 'multiple_choice')

    foreign = client.post(f'/sessions/{sid}/responses', headers=participant['headers'],
                          json={'block_id': _block(other_study, 'multiple_choice')['id'], 'response': 'Red'})
    assert foreign.status_code == 404
    assert client.post(f'/sessions/{sid}/responses', headers=intruder['headers'],
                       json={'block_id': mc['id'], 'response': 'Red'}).status_code == 404
    assert client.get(f'/sessions/{sid}', headers=intruder['headers']).status_code == 404

    monkeypatch.setattr(settings, 'MAX_RESPONSE_BYTES', 10)
    big = client.post(f'/sessions/{sid}/responses', headers=participant['headers'],
                      json={'block_id': mc['id'], 'response': 'Green' * 10})
    assert big.status_code == 413


def test_last_block_flag_completes_session(client, make_user, make_study):
    researcher = make_user('researcher')
    participant = make_user('participant')
    study = make_study(researcher, blocks=[{'type': 'yes_no', 'settings': {'question': 'Done?'}}])
    sid = client.post(f"/studies/{study['id']}/sessions", headers=participant['headers']).json()['id']
    r = client.post(f'/sessions/{sid}/responses', headers=participant['headers'],
                    json={'block_id': study['blocks'][0]['id'], 'response': True, 'is_last_block': True})
    assert r.json()['study_completed'] is True


def test_block_file_uploads(client, make_user, make_study):
    researcher = make_user('researcher')
    participant = make_user('participant')
    study = make_study(researcher, blocks=[
        {'type': 'image_upload', 'settings': {'instruction': 'Upload a screenshot'}},
        {'type': 'file_upload', 'settings': {'instruction': 'Upload a document', 'allowed_formats': ['pdf']}},
        {'type': 'yes_no', 'settings': {}},
    ])
    h = participant['headers']
    sid = client.post(f"/studies/{study['id']}/sessions", headers=h).json()['id']
    image_block, file_block, yes_no = study['blocks']

    ok = client.post(f"/sessions/{sid}/blocks/{image_block['id']}/upload", headers=h,
                     files={'file': ('shot.png', _make_png(), 'image/png')})
    assert ok.status_code == 201
    assert ok.json()['files'][0]['filename'] == 'shot.png'

    fake = client.post(f"/sessions/{sid}/blocks/{image_block['id']}/upload", headers=h,
                       files={'file': ('shot.png', b'not really a png', 'image/png')})
    assert fake.status_code == 415
    wrong_ext = client.post(f"/sessions/{sid}/blocks/{file_block['id']}/upload", headers=h,
                            files={'file': ('notes.txt', b'hello', 'text/plain')})
    assert wrong_ext.status_code == 415
    pdf = client.post(f"/sessions/{sid}/blocks/{file_block['id']}/upload", headers=h,
                      files={'file': ('notes.pdf', b'%PDF-1.4 test', 'application/pdf')})
    assert pdf.status_code == 201
    not_upload = client.post(f"/sessions/{sid}/blocks/{yes_no['id']}/upload", headers=h,
                             files={'file': ('notes.pdf', b'%PDF-1.4', 'application/pdf')})
    assert not_upload.status_code == 400

    detail = client.get(f'/sessions/{sid}', headers=h).json()
    uploads = [r for r in detail['responses'] if r['block_id'] == image_block['id']]
    assert len(uploads[0]['response']['files']) == 1
    assert uploads[0]['response']['files'][0] == {'filename': 'shot.png', 'size_bytes': len(_make_png())}
    storage_dir = str(Path(settings.STORAGE_DIR).resolve())
    for viewer in (h, researcher['headers']):
        assert storage_dir not in client.get(f'/sessions/{sid}', headers=viewer).text
