from datetime import timedelta

from researchhub import models, services


def test_balance_is_created_on_first_read(client, make_user):
    user = make_user('researcher')
    r = client.get('/points/balance', headers=user['headers'])
    assert r.status_code == 200
    assert r.json()['available_points'] == 0
    assert r.json()['user_id'] == user['id']


def test_assign_consume_and_history(client, make_user):
    admin = make_user('admin')
    researcher = make_user('researcher')
    by_email = client.post('/points/assign', headers=admin['headers'],
                           json={'user_email': researcher['email'], 'amount': 20, 'reason': 'Pilot'})
    assert by_email.status_code == 200
    assert by_email.json()['balance']['available_points'] == 20

    assert client.post('/points/assign', headers=admin['headers'], json={'target_user_id': 999999, 'amount': 5}).status_code == 404
    assert client.post('/points/assign', headers=admin['headers'], json={'target_user_id': researcher['id'], 'amount': 0}).status_code == 400
    assert client.post('/points/assign', headers=researcher['headers'],
                       json={'target_user_id': researcher['id'], 'amount': 5}).status_code == 403

    spent = client.post('/points/consume', headers=researcher['headers'], json={'amount': 15, 'reason': 'Study'})
    assert spent.status_code == 200
    assert spent.json()['transaction']['amount'] == -15
    too_much = client.post('/points/consume', headers=researcher['headers'], json={'amount': 6})
    assert too_much.status_code == 402
    assert too_much.json()['available'] == 5

    history = client.get('/points/history', headers=researcher['headers']).json()
    assert [t['type'] for t in history] == ['consumed', 'assigned']
    assert history[0]['balance'] == 5
    assert history[1]['assigned_by'] == admin['id']
    assert client.get('/points/history', headers=researcher['headers'], params={'limit': 0}).status_code == 400

    balances = client.get('/points/admin/balances', headers=admin['headers']).json()
    mine = next(b for b in balances if b['user_id'] == researcher['id'])
    assert mine['total_points'] == 20
    assert mine['profile']['email'] == researcher['email']


def test_expiry_sweep_only_takes_what_is_left(client, make_user, db):
    admin = make_user('admin')
    researcher = make_user('researcher')
    client.post('/points/assign', headers=admin['headers'],
                json={'target_user_id': researcher['id'], 'amount': 10, 'expires_in_days': 1})
    client.post('/points/assign', headers=admin['headers'], json={'target_user_id': researcher['id'], 'amount': 3})
    client.post('/points/consume', headers=researcher['headers'], json={'amount': 6})

    result = services.PointsService(db).expire(now=models.utcnow() + timedelta(days=2))
    assert result['processed'] >= 1

    balance = client.get('/points/balance', headers=researcher['headers']).json()
    assert balance['available_points'] == 0
    assert balance['expired_points'] == 7
    history = client.get('/points/history', headers=researcher['headers']).json()
    assert history[0]['type'] == 'expired'
    assert history[0]['amount'] == -7

    # a second sweep does not touch the same assignment again
    again = services.PointsService(db).expire(now=models.utcnow() + timedelta(days=2))
    assert client.get('/points/balance', headers=researcher['headers']).json()['expired_points'] == 7
    assert again == {'processed': 0, 'expired_points': 0}


def test_admin_expire_endpoint(client, make_user):
    admin = make_user('admin')
    r = client.post('/points/admin/expire', headers=admin['headers'])
    assert r.status_code == 200
    assert set(r.json()) == {'processed', 'expired_points'}
