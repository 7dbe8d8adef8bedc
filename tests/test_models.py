from models import Post, User, db


def test_password_hashing(app):
    user = User(username='erin', email='erin@example.com')

    assert not user.check_password('anything')

    user.set_password('s3cret-pass')

    assert user.password_hash != 's3cret-pass'
    assert user.check_password('s3cret-pass')
    assert not user.check_password('wrong')


def test_to_dict_hides_password_hash(users):
    data = users['alice'].to_dict()

    assert data['username'] == 'alice'
    assert data['created_at'] == '2024-01-15T10:00:00'
    assert 'password_hash' not in data


def test_to_dict_projection_overrides(users):
    bob = users['bob']

    assert set(bob.set_visible(['id', 'email']).to_dict()) == {'id', 'email'}

    bob.add_attribute('posts_count', 3)
    bob.add_attribute('posts_count', 4)

    assert bob.set_visible(['posts_count']).to_dict() == {'posts_count': 4}


def test_soft_delete_mixin(users):
    carol = users['carol']

    assert not carol.trashed
    carol.soft_delete()
    db.session.commit()
    assert carol.trashed
    carol.restore()
    db.session.commit()
    assert carol.deleted_at is None


def test_post_author_backref(posts):
    assert posts['Draft'].author.username == 'alice'
    assert sorted(post.title for post in posts['Hello'].author.authored_posts) == ['Draft', 'Hello']
    assert not hasattr(Post, 'deleted_at')


def test_init_db_command(app):
    runner = app.test_cli_runner()

    result = runner.invoke(args=['init-db'])

    assert 'Initialized the database.' in result.output


def test_config_defaults(app):
    assert app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] is False
    assert app.config['REPOSITORY_PAGINATION_LIMIT'] == 15
    assert app.config['TESTING'] is True
