import logging

import pytest
from sqlalchemy import inspect, select

from models import Post, User, db
from repositories.base_repository import BaseRepository, Trashed
from repositories.exceptions import InvalidConditionError, ModelNotFoundError, RepositoryError
from repositories.post_repository import PostRepository
from repositories.user_repository import UserRepository


def usernames(entities):
    return sorted(entity.username for entity in entities)


# ----------------------------------------------------------------------
# Construction / builder state
# ----------------------------------------------------------------------

def test_model_must_be_mapped():
    with pytest.raises(RepositoryError):
        BaseRepository(object)
    with pytest.raises(RepositoryError):
        BaseRepository()


def test_generic_repository_without_subclass(posts):
    assert BaseRepository(Post).count() == 3


def test_scope_applies_to_next_call_only(users):
    repo = UserRepository()

    repo.scope_query(lambda query: query.where(User.age > 26))

    assert repo.count() == 2
    assert repo.count() == 4


def test_reset_scope_drops_pending_scope(users):
    repo = UserRepository()

    repo.scope_query(lambda query: query.where(User.age > 26)).reset_scope()

    assert repo.count() == 4


def test_scope_is_cleared_after_failed_call(users):
    repo = UserRepository()
    repo.scope_query(lambda query: query.where(User.age > 26)).order_by('age')

    with pytest.raises(InvalidConditionError):
        repo.find_where([('age', 'IN', 'not-an-array')])

    assert repo.count() == 4
    assert str(repo.query) == str(select(User))


def test_chained_state_is_reset_after_each_call(users):
    repo = UserRepository()

    oldest = repo.order_by('age', 'desc').take(1).all()

    assert usernames(oldest) == ['dave']
    assert len(repo.all()) == 4


def test_find_consumes_scope_even_when_not_found(users):
    repo = UserRepository()
    repo.scope_query(lambda query: query.where(User.age > 100))

    assert repo.find(users['alice'].id) is False
    assert repo.find(users['alice'].id).username == 'alice'


def test_order_by_rejects_unknown_direction(users):
    with pytest.raises(InvalidConditionError):
        UserRepository().order_by('age', 'sideways')


def test_raw_passthrough_returns_result_unchanged(users):
    repo = UserRepository()

    statement = repo.raw('where', User.age > 26)

    assert usernames(db.session.execute(statement).scalars()) == ['bob', 'dave']
    assert repo.raw('limit', 1) is not repo.query
    assert repo.count() == 4


def test_trashed_parse():
    assert Trashed.parse('') is Trashed.NONE
    assert Trashed.parse(None) is Trashed.NONE
    assert Trashed.parse('withTrashed') is Trashed.WITH
    assert Trashed.parse('only_trashed') is Trashed.ONLY
    assert Trashed.parse(Trashed.ONLY) is Trashed.ONLY
    with pytest.raises(ValueError):
        Trashed.parse('sometimes')


# ----------------------------------------------------------------------
# Lookups
# ----------------------------------------------------------------------

def test_find_returns_false_when_missing(users):
    assert UserRepository().find(9999) is False


def test_find_with_columns(users):
    user = UserRepository().find(users['bob'].id, ['username'])

    assert user.username == 'bob'


def test_find_by_field_and_helpers(users):
    repo = UserRepository()

    assert usernames(repo.find_by_field('age', 17)) == ['carol']
    assert usernames(repo.find_where_in('age', [17, 40])) == ['carol', 'dave']
    assert usernames(repo.find_where_not_in('age', [17, 40])) == ['alice', 'bob']
    assert usernames(repo.find_where_between('age', [20, 35])) == ['alice', 'bob']
    assert repo.find_by_username('bob').email == 'bob@example.com'
    assert repo.find_by_email('nobody@example.com') is None


def test_limit(users):
    assert len(UserRepository().limit(2)) == 2


def test_pluck(users):
    repo = UserRepository()

    assert sorted(repo.pluck('username')) == ['alice', 'bob', 'carol', 'dave']
    by_id = repo.pluck('username', 'id')
    assert by_id[users['carol'].id] == 'carol'


def test_count_where(users):
    repo = UserRepository()

    assert repo.count_where([('age', '>=', 18)]) == 3
    assert repo.count_where({}) == 4
    assert repo.count('age') == 4


def test_first_or_new_and_first_or_create(users):
    repo = UserRepository()

    assert repo.first_or_new({'username': 'alice'}).id == users['alice'].id

    fresh = repo.first_or_new({'username': 'erin', 'email': 'erin@example.com'})
    assert inspect(fresh).transient
    assert repo.count() == 4

    created = repo.first_or_create({'username': 'erin', 'email': 'erin@example.com'})
    assert created.id is not None
    assert repo.count() == 5
    assert repo.first_or_create({'username': 'erin'}).id == created.id


def test_update_or_create(users):
    repo = UserRepository()

    updated = repo.update_or_create({'username': 'alice'}, {'age': 26})
    created = repo.update_or_create({'username': 'erin'}, {'email': 'erin@example.com', 'age': 22})

    assert updated.id == users['alice'].id
    assert db.session.get(User, updated.id).age == 26
    assert created.id is not None
    assert repo.count() == 5


def test_with_relations_eager_loads(posts):
    [alice] = UserRepository().with_relations('posts.users').find_by_field('username', 'alice')

    assert 'posts' not in inspect(alice).unloaded
    assert [post.title for post in alice.posts] == ['Hello']


def test_with_count(posts):
    repo = UserRepository()

    shared = {user.username: user.posts_count for user in repo.with_count('posts').all()}
    authored = repo.with_count('authored_posts').find(posts['Draft'].user_id)

    assert shared == {'alice': 1, 'bob': 2, 'carol': 0, 'dave': 0}
    assert authored.authored_posts_count == 2
    assert authored.to_dict()['authored_posts_count'] == 2


def test_where_has(posts):
    found = UserRepository().where_has('posts', lambda Post: Post.title == 'Flask tips').all()

    assert usernames(found) == ['bob']


def test_visible_and_hidden_projection(users):
    repo = UserRepository()

    assert 'password_hash' not in repo.find(users['alice'].id).to_dict()
    assert set(repo.visible(['id', 'username']).find(users['bob'].id).to_dict()) == {'id', 'username'}
    assert 'email' not in repo.hidden(['email']).find(users['carol'].id).to_dict()


# ----------------------------------------------------------------------
# Soft deletes
# ----------------------------------------------------------------------

def test_delete_soft_deletes_and_trashed_modes(users):
    repo = UserRepository()
    alice_id = users['alice'].id

    assert repo.delete(alice_id) is True

    assert repo.find(alice_id) is False
    assert repo.find_with_trashed(alice_id).username == 'alice'
    assert repo.find(alice_id, None, 'onlytrashed').username == 'alice'
    assert repo.find_only_trashed(users['bob'].id) is False
    assert repo.count() == 3
    assert len(repo.all_with_trashed()) == 4
    assert usernames(repo.all_trashed()) == ['alice']


def test_delete_already_trashed_returns_false(users):
    repo = UserRepository()
    repo.delete(users['alice'].id)

    assert repo.delete(users['alice'].id) is False


def test_restore(users):
    repo = UserRepository()
    alice_id = users['alice'].id
    repo.delete(alice_id)

    assert repo.restore(alice_id) is True
    assert repo.find(alice_id).username == 'alice'
    assert repo.restore(9999) is False


def test_force_delete_removes_row(users):
    repo = UserRepository()
    alice_id = users['alice'].id
    repo.delete(alice_id)

    assert repo.force_delete(alice_id) is True
    assert repo.find_with_trashed(alice_id) is False


def test_delete_missing_id_returns_false_without_mutation(users):
    repo = UserRepository()

    assert repo.delete(9999) is False
    assert repo.force_delete(9999) is False
    assert len(repo.all_with_trashed()) == 4
    assert repo.all_trashed() == []


def test_delete_without_soft_deletes_removes_row(posts):
    repo = PostRepository()
    hello_id = posts['Hello'].id

    assert repo.delete(hello_id) is True
    assert db.session.get(Post, hello_id) is None


def test_only_trashed_requires_soft_deletes(posts):
    repo = PostRepository()

    with pytest.raises(RepositoryError):
        repo.all_trashed()
    assert repo.find_only_trashed(posts['Hello'].id) is False
    assert len(repo.all_with_trashed()) == 3


def test_delete_rejects_unknown_method(users):
    with pytest.raises(ValueError):
        UserRepository().delete(users['alice'].id, 'shred')


# ----------------------------------------------------------------------
# Mutations
# ----------------------------------------------------------------------

def test_create(users):
    repo = UserRepository()

    user = repo.create({'username': 'erin', 'email': 'erin@example.com', 'age': 22})

    assert user.id is not None
    assert repo.count() == 5


def test_create_failure_rolls_back_and_logs(users, caplog):
    repo = UserRepository()

    with caplog.at_level(logging.ERROR, logger='repositories.base_repository'):
        result = repo.create({'username': 'alice', 'email': 'other@example.com'})

    assert result is False
    assert 'User.create failed, transaction rolled back' in caplog.text
    assert repo.count() == 4


def test_create_with_unknown_attribute_returns_false(users):
    assert UserRepository().create({'username': 'erin', 'nickname': 'e'}) is False


def test_create_with_password(users):
    repo = UserRepository()

    user = repo.create_with_password('erin', 'erin@example.com', 's3cret-pass')

    assert user.check_password('s3cret-pass')
    assert not user.check_password('wrong')


def test_update(users):
    repo = UserRepository()

    user = repo.update({'age': 26}, users['alice'].id)

    assert user.age == 26
    assert repo.update({'age': 1}, 9999) is False


def test_update_with_entity(users):
    user = UserRepository().update({'age': 31}, users['bob'])

    assert db.session.get(User, user.id).age == 31


def test_update_failure_keeps_previous_values(users):
    repo = UserRepository()
    alice_id = users['alice'].id

    assert repo.update({'email': 'bob@example.com'}, alice_id) is False
    assert repo.update({'nickname': 'al'}, alice_id) is False
    assert repo.find(alice_id).email == 'alice@example.com'


def test_insert(users):
    repo = UserRepository()

    assert repo.insert([
        {'username': 'erin', 'email': 'erin@example.com'},
        {'username': 'frank', 'email': 'frank@example.com'},
    ]) is True
    assert repo.insert({'username': 'gina', 'email': 'gina@example.com'}) is True
    assert repo.insert([]) is True
    assert repo.count() == 7


def test_insert_is_all_or_nothing(users):
    repo = UserRepository()

    assert repo.insert([
        {'username': 'erin', 'email': 'erin@example.com'},
        {'username': 'alice', 'email': 'dup@example.com'},
    ]) is False
    assert repo.find_by_username('erin') is None
    assert repo.count() == 4


def test_delete_where_soft_deletes(users):
    repo = UserRepository()

    assert repo.delete_where([('age', '<', 20)]) is True
    assert repo.count() == 3
    assert usernames(repo.all_trashed()) == ['carol']


def test_delete_where_hard_deletes_without_soft_deletes(posts):
    repo = PostRepository()

    assert repo.delete_where({'user_id': posts['Hello'].user_id}) is True
    assert [post.title for post in repo.all()] == ['Flask tips']


def test_delete_where_usage_error_propagates(users):
    repo = UserRepository()

    with pytest.raises(InvalidConditionError):
        repo.delete_where([('age', 'IN', 'not-an-array')])
    assert repo.count() == 4


def test_delete_where_respects_scope(users):
    repo = UserRepository()
    repo.scope_query(lambda query: query.where(User.username == 'dave'))

    assert repo.delete_where([('age', '>', 20)]) is True
    assert usernames(repo.all_trashed()) == ['dave']


# ----------------------------------------------------------------------
# Relations
# ----------------------------------------------------------------------

def test_sync_attaches_and_detaches(posts):
    repo = UserRepository()
    bob_id = posts['Flask tips'].user_id

    changes = repo.sync(bob_id, 'posts', [posts['Draft'].id, posts['Hello']])

    assert changes == {'attached': [posts['Draft'].id], 'detached': [posts['Flask tips'].id]}
    assert sorted(post.title for post in db.session.get(User, bob_id).posts) == ['Draft', 'Hello']


def test_sync_without_detaching(posts):
    repo = UserRepository()
    alice = posts['Draft'].author

    changes = repo.sync_without_detaching(alice, 'posts', posts['Flask tips'].id)

    assert changes == {'attached': [posts['Flask tips'].id], 'detached': []}
    assert sorted(post.title for post in alice.posts) == ['Flask tips', 'Hello']


def test_sync_missing_entities(posts):
    repo = UserRepository()

    with pytest.raises(ModelNotFoundError):
        repo.sync(9999, 'posts', [])
    with pytest.raises(ModelNotFoundError):
        repo.sync(posts['Hello'].user_id, 'posts', [9999])
    with pytest.raises(InvalidConditionError):
        PostRepository().sync(posts['Hello'].id, 'author', [])


# ----------------------------------------------------------------------
# State reset on usage errors
# ----------------------------------------------------------------------

@pytest.mark.parametrize('call', [
    lambda repo, users: repo.delete_where([('age', 'IN', 'not-an-array')]),
    lambda repo, users: repo.sync(users['alice'].id, 'nope', []),
    lambda repo, users: repo.sync(users['alice'].id, 'posts', [9999]),
    lambda repo, users: repo.paginate(method='cursor'),
    lambda repo, users: repo.delete(users['alice'].id, 'shred'),
    lambda repo, users: repo.order_by('nope'),
    lambda repo, users: repo.with_count('nope'),
    lambda repo, users: repo.where_has('nope'),
])
def test_usage_error_clears_scope_and_chain(users, call):
    repo = UserRepository()
    repo.scope_query(lambda query: query.where(User.age > 26)).take(1)

    with pytest.raises((RepositoryError, ValueError)):
        call(repo, users)

    assert repo.count() == 4
    assert len(repo.all()) == 4


def test_sync_with_entity_consumes_scope(posts):
    repo = UserRepository()
    repo.scope_query(lambda query: query.where(User.age > 26))

    repo.sync_without_detaching(posts['Hello'].author, 'posts', [])

    assert repo.count() == 4


def test_projection_does_not_stick_to_entities(users):
    repo = UserRepository()
    alice_id = users['alice'].id

    repo.hidden(['email']).all()
    data = repo.find(alice_id).to_dict()

    assert 'email' in data
    assert 'password_hash' not in data

    repo.visible(['id']).all()

    assert 'username' in repo.find(alice_id).to_dict()


def test_relation_counts_do_not_stick_to_entities(posts):
    repo = UserRepository()

    repo.with_count('posts').all()
    [alice] = repo.find_by_field('username', 'alice')

    assert 'posts_count' not in alice.to_dict()
    assert not hasattr(alice, 'posts_count')


def test_delete_trashed_entity_keeps_deleted_at(users):
    repo = UserRepository()
    alice = users['alice']
    repo.delete(alice)
    deleted_at = alice.deleted_at

    assert repo.delete(alice) is False
    assert repo.find_with_trashed(alice.id).deleted_at == deleted_at
    assert repo.force_delete(alice) is True
