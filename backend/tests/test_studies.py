import json

from researchhub.config import settings


def test_create_study_returns_draft_with_blocks_and_summary(client, make_user, make_study):
    researcher = make_user('researcher')
    study = make_study(researcher, activate=False)
    assert study['status'] == 'draft'
    assert study['target_participants'] == 10
    assert [b['type'] for b in study['blocks']] == ['welcome_screen', 'multiple_choice', 'opinion_scale', 'thank_you']
    assert [b['position'] for b in study['blocks']] == [0, 1, 2, 3]
    assert study['estimated_duration'] == 30 + 20 + 15 + 15
    assert study['complexity']['simple'] == 4


def test_create_study_validation(client, make_user):
    researcher = make_user('researcher')
    h = researcher['headers']
    assert client.post('/studies', headers=h, json={'title': '  '}).status_code == 400
    bad_block = {'title': 'T', 'blocks': [{'type': 'multiple_choice', 'settings': {'options': ['one']}}]}
    r = client.post('/studies', headers=h, json=bad_block)
    assert r.status_code == 400
    assert 'block 0' in r.json()['detail']
    assert client.post('/studies', headers=h, json={'title': 'T', 'study_type': 'poll'}).status_code == 400


def test_visibility_rules(client, make_user, make_study):
    owner = make_user('researcher')
    other = make_user('researcher')
    participant = make_user('participant')
    draft = make_study(owner, activate=False, title='Hidden draft')
    active = make_study(owner, title='Open study')

    assert client.get(f"/studies/{draft['id']}", headers=participant['headers']).status_code == 404
    assert client.get(f"/studies/{active['id']}", headers=participant['headers']).status_code == 200
    assert client.get(f"/studies/{draft['id']}", headers=other['headers']).status_code == 404

    listed = client.get('/studies', headers=participant['headers']).json()
    assert all(s['status'] == 'active' for s in listed['studies'])
    mine = client.get('/studies', headers=owner['headers'], params={'limit': 1}).json()
    assert mine['pagination']['total'] == 2
    assert mine['pagination']['has_next'] is True
    assert len(mine['studies']) == 1
    searched = client.get('/studies', headers=owner['headers'], params={'search': 'hidden'}).json()
    assert [s['title'] for s in searched['studies']] == ['Hidden draft']


def test_status_transitions_and_edit_rules(client, make_user):
    researcher = make_user('researcher')
    h = researcher['headers']
    study = client.post('/studies', headers=h, json={'title': 'No blocks yet'}).json()
    sid = study['id']

    check = client.post(f'/studies/{sid}/status/validate', headers=h, json={'status': 'active'}).json()
    assert check['valid'] is False
    assert 'description' in check['reason']
    client.put(f'/studies/{sid}', headers=h, json={'description': 'Now described'})
    r = client.post(f'/studies/{sid}/status', headers=h, json={'status': 'active'})
    assert r.status_code == 409
    assert 'block' in r.json()['detail']

    client.put(f'/studies/{sid}', headers=h, json={'blocks': [{'type': 'yes_no', 'settings': {'question': 'OK?'}}]})
    assert client.post(f'/studies/{sid}/status', headers=h, json={'status': 'active'}).status_code == 200

    assert client.get(f'/studies/{sid}/can-edit', headers=h).json()['can_edit'] is False
    r = client.put(f'/studies/{sid}', headers=h, json={'title': 'Changed'})
    assert r.status_code == 409
    assert 'Pause' in r.json()['detail']

    assert client.post(f'/studies/{sid}/status', headers=h, json={'status': 'paused'}).status_code == 200
    assert client.get(f'/studies/{sid}/can-edit', headers=h).json()['can_edit'] is True
    assert client.put(f'/studies/{sid}', headers=h, json={'title': 'Changed'}).json()['title'] == 'Changed'

    assert client.post(f'/studies/{sid}/status', headers=h, json={'status': 'completed'}).status_code == 409
    assert client.post(f'/studies/{sid}/archive', headers=h).json()['status'] == 'archived'
    assert client.post(f'/studies/{sid}/status', headers=h, json={'status': 'draft'}).status_code == 409


def test_update_replaces_blocks_keeping_ids(client, make_user, make_study):
    researcher = make_user('researcher')
    study = make_study(researcher, activate=False)
    keep = study['blocks'][1]
    r = client.put(f"/studies/{study['id']}", headers=researcher['headers'], json={'blocks': [
        {'id': keep['id'], 'type': 'multiple_choice', 'settings': {'question': 'Renamed?', 'options': ['Yes', 'No']}},
        {'type': 'thank_you', 'settings': {}},
    ]})
    assert r.status_code == 200
    updated = r.json()['blocks']
    assert len(updated) == 2
    assert updated[0]['id'] == keep['id']
    assert updated[0]['settings']['question'] == 'Renamed?'


def test_duplicate_and_delete(client, make_user, make_study):
    researcher = make_user('researcher')
    h = researcher['headers']
    study = make_study(researcher)
    copy = client.post(f"/studies/{study['id']}/duplicate", headers=h)
    assert copy.status_code == 201
    assert copy.json()['title'] == 'Checkout study (Copy)'
    assert copy.json()['status'] == 'draft'
    assert len(copy.json()['blocks']) == len(study['blocks'])

    other = make_user('researcher')
    assert client.delete(f"/studies/{study['id']}", headers=other['headers']).status_code == 404
    assert client.delete(f"/studies/{study['id']}", headers=h).status_code == 204
    assert client.get(f"/studies/{study['id']}", headers=h).status_code == 404


def test_import_blocks_from_text_and_json(client, make_user, make_study):
    researcher = make_user('researcher')
    h = researcher['headers']
    study = make_study(researcher, blocks=[], activate=False)
    txt = b"Which browser do you use?\n- Firefox\n- Chrome\n\nDescribe your last purchase in detail"

    dry = client.post(f"/studies/{study['id']}/import", headers=h, params={'dry_run': True},
                      files={'file': ('q.txt', txt, 'text/plain')})
    assert dry.status_code == 200
    assert dry.json()['valid'] == 2
    assert dry.json()['created'] == 0

    real = client.post(f"/studies/{study['id']}/import", headers=h, files={'file': ('q.txt', txt, 'text/plain')})
    assert real.json()['created'] == 2
    detail = client.get(f"/studies/{study['id']}", headers=h).json()
    assert [b['type'] for b in detail['blocks']] == ['multiple_choice', 'open_question']
    assert detail['blocks'][0]['settings']['options'] == ['Firefox', 'Chrome']

    items = json.dumps([{'question': 'Any comments?'}, {'options': ['a', 'b']}, {'question': 'Q', 'type': 'hologram'}])
    r = client.post(f"/studies/{study['id']}/import", headers=h, files={'file': ('q.json', items.encode(), 'application/json')})
    body = r.json()
    assert body['created'] == 1
    assert [e['index'] for e in body['errors']] == [1, 2]

    unsupported = client.post(f"/studies/{study['id']}/import", headers=h, files={'file': ('q.xls', b'x', 'application/octet-stream')})
    assert unsupported.status_code == 400


def test_import_handles_windows_line_endings_and_unreadable_documents(client, make_user, make_study):
    researcher = make_user('researcher')
    h = researcher['headers']
    study = make_study(researcher, blocks=[], activate=False)
    crlf = b"Which colour?\r\nRed\r\nBlue\r\n\r\nWhy?\r\n"
    r = client.post(f"/studies/{study['id']}/import", headers=h, files={'file': ('q.txt', crlf, 'text/plain')})
    assert r.status_code == 200
    assert r.json()['parsed'] == 2
    blocks = client.get(f"/studies/{study['id']}", headers=h).json()['blocks']
    assert blocks[0]['settings']['options'] == ['Red', 'Blue']
    assert blocks[1]['settings']['question'] == 'Why?'

    for name in ('q.docx', 'q.pdf'):
        bad = client.post(f"/studies/{study['id']}/import", headers=h,
                          files={'file': (name, b'not a real document', 'application/octet-stream')})
        assert bad.status_code == 400
        assert 'could not read' in bad.json()['detail']


def test_study_creation_consumes_points(client, make_user, monkeypatch):
    monkeypatch.setattr(settings, 'STUDY_CREATION_POINTS', 5)
    admin = make_user('admin')
    researcher = make_user('researcher')
    h = researcher['headers']
    r = client.post('/studies', headers=h, json={'title': 'Costs points'})
    assert r.status_code == 402
    assert r.json()['required'] == 5
    assert client.get('/studies', headers=h).json()['pagination']['total'] == 0

    client.post('/points/assign', headers=admin['headers'], json={'target_user_id': researcher['id'], 'amount': 8})
    assert client.post('/studies', headers=h, json={'title': 'Costs points'}).status_code == 201
    balance = client.get('/points/balance', headers=h).json()
    assert balance['available_points'] == 3
    assert balance['used_points'] == 5
    # admins are not charged
    assert client.post('/studies', headers=admin['headers'], json={'title': 'Free'}).status_code == 201
