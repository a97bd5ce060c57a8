def test_apply_withdraw_and_reapply(client, make_user, make_study):
    researcher = make_user('researcher')
    participant = make_user('participant')
    draft = make_study(researcher, activate=False)
    study = make_study(researcher)
    h = participant['headers']

    assert client.post(f"/studies/{draft['id']}/apply", headers=h).status_code == 409
    assert client.post('/studies/99999/apply', headers=h).status_code == 404

    r = client.post(f"/studies/{study['id']}/apply", headers=h, json={'responses': {'age': 30}})
    assert r.status_code == 201
    app_id = r.json()['id']
    assert r.json()['status'] == 'pending'
    assert r.json()['application_data'] == {'age': 30}
    assert client.post(f"/studies/{study['id']}/apply", headers=h).status_code == 409

    mine = client.get('/applications/mine', headers=h).json()
    assert [a['id'] for a in mine] == [app_id]

    assert client.post(f'/applications/{app_id}/withdraw', headers=h).json()['status'] == 'withdrawn'
    assert client.post(f'/applications/{app_id}/withdraw', headers=h).status_code == 409
    assert client.post(f"/studies/{study['id']}/apply", headers=h).status_code == 201


def test_review_and_capacity(client, make_user, make_study):
    researcher = make_user('researcher')
    stranger = make_user('researcher')
    first = make_user('participant')
    second = make_user('participant')
    third = make_user('participant')
    study = make_study(researcher, settings={'max_participants': 1})

    a1 = client.post(f"/studies/{study['id']}/apply", headers=first['headers']).json()
    a2 = client.post(f"/studies/{study['id']}/apply", headers=second['headers']).json()

    bad = client.put(f"/applications/{a1['id']}/review", headers=researcher['headers'], json={'status': 'maybe'})
    assert bad.status_code == 400
    denied = client.put(f"/applications/{a1['id']}/review", headers=stranger['headers'], json={'status': 'accepted'})
    assert denied.status_code == 403

    ok = client.put(f"/applications/{a1['id']}/review", headers=researcher['headers'],
                    json={'status': 'accepted', 'notes': 'Good fit'})
    assert ok.status_code == 200
    assert ok.json()['status'] == 'accepted'
    assert ok.json()['notes'] == 'Good fit'
    assert ok.json()['reviewed_at'] is not None

    full = client.put(f"/applications/{a2['id']}/review", headers=researcher['headers'], json={'status': 'accepted'})
    assert full.status_code == 409
    assert client.post(f"/studies/{study['id']}/apply", headers=third['headers']).status_code == 409


def test_list_study_applications_with_pagination(client, make_user, make_study):
    researcher = make_user('researcher')
    study = make_study(researcher)
    for _ in range(3):
        p = make_user('participant', first_name='Pat', last_name='Doe')
        client.post(f"/studies/{study['id']}/apply", headers=p['headers'])

    page = client.get(f"/studies/{study['id']}/applications", headers=researcher['headers'], params={'limit': 2}).json()
    assert page['pagination'] == {'current': 1, 'pages': 2, 'total': 3, 'has_next': True, 'has_prev': False}
    assert page['applications'][0]['participant']['name'] == 'Pat Doe'

    accepted = client.get(f"/studies/{study['id']}/applications", headers=researcher['headers'],
                          params={'status': 'accepted'}).json()
    assert accepted['pagination']['total'] == 0
    other = make_user('researcher')
    assert client.get(f"/studies/{study['id']}/applications", headers=other['headers']).status_code == 404
