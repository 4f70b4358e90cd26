from types import SimpleNamespace

import pytest

from app import create_app
from config import TestingConfig
from models import db


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def ledger(app):
    with app.app_context():
        yield app.extensions['ledger']


@pytest.fixture
def flat(ledger):
    """A group owned by alice with bob and carol added, in that order."""
    alice = ledger.register_user('alice', 'pw-alice')
    bob = ledger.register_user('bob', 'pw-bob')
    carol = ledger.register_user('carol', 'pw-carol')
    group = ledger.create_group(alice, 'Flat')
    ledger.add_member(alice, group.id, 'bob')
    ledger.add_member(alice, group.id, 'carol')
    return SimpleNamespace(alice=alice, bob=bob, carol=carol, group=group)