TEMPLATE_BLOCKS = [
    {'type': 'welcome_screen', 'settings': {}},
    {'type': 'yes_no', 'settings': {'question': 'Did you find it?'}},
    {'type': 'thank_you', 'settings': {}},
]


def _template(client, author, **overrides):
    body = {'title': 'Onboarding check', 'description': 'Quick onboarding survey', 'category': 'Onboarding',
            'blocks': TEMPLATE_BLOCKS}
    body.update(overrides)
    r = client.post('/templates', headers=author['headers'], json=body)
    assert r.status_code == 201, r.text
    return r.json()


def test_create_list_and_use_template(client, make_user):
    author = make_user('researcher')
    tpl = _template(client, author)
    assert tpl['category'] == 'onboarding'
    assert len(tpl['blocks']) == 3
    hidden = _template(client, author, title='Private one', is_public=False)

    listed = client.get('/templates', params={'category': 'onboarding'}).json()
    ids = [t['id'] for t in listed]
    assert tpl['id'] in ids
    assert hidden['id'] not in ids
    assert client.get('/templates', params={'sort': 'weird'}).status_code == 400
    assert client.post('/templates', headers=author['headers'], json={'title': 'Empty', 'blocks': []}).status_code == 400

    user = make_user('researcher')
    assert client.get(f"/templates/{hidden['id']}", headers=user['headers']).status_code == 404
    assert client.get(f"/templates/{hidden['id']}", headers=author['headers']).status_code == 200

    study = client.post(f"/templates/{tpl['id']}/use", headers=user['headers'], json={'title': 'My onboarding'})
    assert study.status_code == 201
    assert study.json()['status'] == 'draft'
    assert study.json()['title'] == 'My onboarding'
    assert [b['type'] for b in study.json()['blocks']] == ['welcome_screen', 'yes_no', 'thank_you']
    assert client.get(f"/templates/{tpl['id']}", headers=user['headers']).json()['usage_count'] == 1


def test_reviews_lifecycle_and_summary(client, make_user):
    author = make_user('researcher')
    tpl = _template(client, author)
    tid = tpl['id']
    alice = make_user('researcher', first_name='Alice', last_name='Smith')
    bob = make_user('participant', first_name='', last_name='')

    r = client.post(f'/templates/{tid}/reviews', headers=alice['headers'],
                    json={'rating': 5, 'comment': '  Worked great for us  ', 'title': 'Nice'})
    assert r.status_code == 201
    review = r.json()
    assert review['reviewer_name'] == 'Alice Smith'
    assert review['comment'] == 'Worked great for us'

    assert client.post(f'/templates/{tid}/reviews', headers=alice['headers'],
                       json={'rating': 4, 'comment': 'Second try here'}).status_code == 409
    assert client.post(f'/templates/{tid}/reviews', headers=bob['headers'],
                       json={'rating': 6, 'comment': 'Way too good'}).status_code == 400
    assert client.post(f'/templates/{tid}/reviews', headers=bob['headers'],
                       json={'rating': 3, 'comment': '   short   '}).status_code == 400
    r = client.post(f'/templates/{tid}/reviews', headers=bob['headers'], json={'rating': 2, 'comment': 'Not for our team'})
    assert r.json()['reviewer_name'] == bob['email'].split('@')[0]

    listing = client.get(f'/templates/{tid}/reviews').json()
    assert listing['summary']['total_reviews'] == 2
    assert listing['summary']['average_rating'] == 3.5
    dist = {d['rating']: d['count'] for d in listing['summary']['rating_distribution']}
    assert dist == {1: 0, 2: 1, 3: 0, 4: 0, 5: 1}
    assert listing['pagination'] == {'page': 1, 'limit': 10, 'total': 2, 'pages': 1}
    low_first = client.get(f'/templates/{tid}/reviews', params={'sort': 'rating_low'}).json()
    assert [x['rating'] for x in low_first['reviews']] == [2, 5]
    assert client.get(f'/templates/{tid}', headers=alice['headers']).json()['average_rating'] == 3.5

    rid = review['id']
    assert client.put(f'/templates/{tid}/reviews/{rid}', headers=bob['headers'], json={'rating': 1}).status_code == 403
    updated = client.put(f'/templates/{tid}/reviews/{rid}', headers=alice['headers'], json={'rating': 3})
    assert updated.json()['rating'] == 3
    assert client.get(f'/templates/{tid}', headers=alice['headers']).json()['average_rating'] == 2.5

    helpful = client.post(f'/templates/{tid}/reviews/{rid}/helpful', headers=bob['headers'])
    assert helpful.json()['helpful_count'] == 1

    assert client.delete(f'/templates/{tid}/reviews/{rid}', headers=bob['headers']).status_code == 403
    assert client.delete(f'/templates/{tid}/reviews/{rid}', headers=alice['headers']).status_code == 204
    after = client.get(f'/templates/{tid}', headers=alice['headers']).json()
    assert after['review_count'] == 1
    assert after['average_rating'] == 2.0


def test_admin_can_remove_reviews(client, make_user):
    author = make_user('researcher')
    admin = make_user('admin')
    tpl = _template(client, author)
    r = client.post(f"/templates/{tpl['id']}/reviews", headers=author['headers'],
                    json={'rating': 4, 'comment': 'Own template, fine'})
    rid = r.json()['id']
    assert client.delete(f"/templates/{tpl['id']}/reviews/{rid}", headers=admin['headers']).status_code == 204
    assert client.get(f"/templates/{tpl['id']}/reviews").json()['summary']['total_reviews'] == 0
