import time


def _block(study, block_type):
    return next(b for b in study['blocks'] if b['type'] == block_type)


def _take_study(client, participant, study, choice, rating, finish=True):
    h = participant['headers']
    sid = client.post(f"/studies/{study['id']}/sessions", headers=h).json()['id']
    client.post(f'/sessions/{sid}/responses', headers=h,
                json={'block_id': _block(study, 'multiple_choice')['id'], 'response': choice, 'time_spent': 4})
    client.post(f'/sessions/{sid}/responses', headers=h,
                json={'block_id': _block(study, 'opinion_scale')['id'], 'response': rating, 'time_spent': 2})
    if finish:
        client.post(f'/sessions/{sid}/responses', headers=h,
                    json={'block_id': _block(study, 'thank_you')['id'], 'response': {}})
    return sid


def test_results_aggregate_per_block(client, make_user, make_study):
    researcher = make_user('researcher')
    study = make_study(researcher)
    _take_study(client, make_user('participant'), study, 'Red', 4)
    _take_study(client, make_user('participant'), study, 'Red', 2)
    _take_study(client, make_user('participant'), study, 'Blue', 5, finish=False)

    r = client.get(f"/studies/{study['id']}/results", headers=researcher['headers'])
    assert r.status_code == 200
    results = r.json()
    assert results['participants'] == 3
    blocks = {b['type']: b for b in results['blocks']}
    assert blocks['multiple_choice']['summary']['option_counts'] == {'Red': 2, 'Green': 0, 'Blue': 1}
    assert blocks['multiple_choice']['average_time_spent'] == 4
    assert blocks['opinion_scale']['summary']['average'] == round(11 / 3, 2)
    assert blocks['opinion_scale']['summary']['distribution'] == {'2': 1, '4': 1, '5': 1}
    assert blocks['welcome_screen']['response_count'] == 0

    other = make_user('researcher')
    assert client.get(f"/studies/{study['id']}/results", headers=other['headers']).status_code == 404


def test_study_analytics_and_dashboard_cache(client, make_user, make_study):
    researcher = make_user('researcher')
    study = make_study(researcher)
    p1 = make_user('participant')
    client.post(f"/studies/{study['id']}/apply", headers=p1['headers'])
    _take_study(client, p1, study, 'Green', 3)
    _take_study(client, make_user('participant'), study, 'Green', 3, finish=False)

    analytics = client.get(f"/studies/{study['id']}/analytics", headers=researcher['headers']).json()
    assert analytics['sessions_started'] == 2
    assert analytics['sessions_completed'] == 1
    assert analytics['completion_rate'] == 50.0
    assert analytics['applications'] == {'pending': 1}
    assert sum(d['count'] for d in analytics['responses_per_day']) == 5

    first = client.get('/analytics/dashboard', headers=researcher['headers']).json()
    assert first['cached'] is False
    assert first['data']['total_studies'] == 1
    assert first['data']['active_studies'] == 1
    assert first['data']['total_participants'] == 2
    assert first['data']['recent_studies'][0]['id'] == study['id']
    second = client.get('/analytics/dashboard', headers=researcher['headers']).json()
    assert second['cached'] is True
    assert second['data'] == first['data']


def test_csv_export_job(client, make_user, make_study):
    researcher = make_user('researcher')
    study = make_study(researcher)
    _take_study(client, make_user('participant'), study, 'Red', 5)

    created = client.post(f"/studies/{study['id']}/export", headers=researcher['headers'])
    assert created.status_code == 202
    job_id = created.json()['job_id']
    assert created.json()['status_url'] == f'/exports/{job_id}'

    deadline = time.time() + 5
    status = None
    while time.time() < deadline:
        poll = client.get(f'/exports/{job_id}', headers=researcher['headers'])
        assert poll.status_code == 200
        status = poll.json()['status']
        if status in ('succeeded', 'failed'):
            break
        time.sleep(0.05)

    assert status == 'succeeded'
    final = client.get(f'/exports/{job_id}', headers=researcher['headers']).json()
    assert final['result']['rows'] == 3
    assert 'path' not in final['result']

    dl = client.get(f'/exports/{job_id}/download', headers=researcher['headers'])
    assert dl.status_code == 200
    lines = dl.text.strip().splitlines()
    assert lines[0].startswith('session_id,participant_id')
    assert len(lines) == 4

    other = make_user('researcher')
    assert client.get(f'/exports/{job_id}', headers=other['headers']).status_code == 404
    assert client.post(f"/studies/{study['id']}/export", headers=researcher['headers'],
                       params={'export_format': 'xlsx'}).status_code == 400
