"""Shared fixtures: in-memory SQLite app with a small seeded dataset."""
from datetime import datetime

import pytest

from app import create_app
from models import db, Post, User


@pytest.fixture
def app():
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'REPOSITORY_PAGINATION_LIMIT': 15,
    })
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def users(app):
    """alice 25, bob 30, carol 17, dave 40."""
    people = [
        User(username='alice', email='alice@example.com', age=25, created_at=datetime(2024, 1, 15, 10, 0)),
        User(username='bob', email='bob@example.com', age=30, created_at=datetime(2024, 2, 20, 12, 0)),
        User(username='carol', email='carol@example.com', age=17, created_at=datetime(2023, 12, 31, 23, 0)),
        User(username='dave', email='dave@example.com', age=40, created_at=datetime(2024, 1, 5, 8, 0)),
    ]
    db.session.add_all(people)
    db.session.commit()
    return {user.username: user for user in people}


@pytest.fixture
def posts(users):
    """'Hello' and 'Draft' written by alice, 'Flask tips' by bob.

    Shared (post_user): Hello -> alice, bob ; Flask tips -> bob.
    """
    alice, bob = users['alice'], users['bob']
    hello = Post(title='Hello', user_id=alice.id, views=50, min_views=10, max_views=100)
    tips = Post(title='Flask tips', user_id=bob.id, views=5, min_views=10, max_views=100)
    draft = Post(title='Draft', user_id=alice.id, views=200, min_views=0, max_views=150)
    hello.users.extend([alice, bob])
    tips.users.append(bob)
    db.session.add_all([hello, tips, draft])
    db.session.commit()
    return {post.title: post for post in (hello, tips, draft)}

