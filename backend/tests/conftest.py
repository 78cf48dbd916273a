"""
Pytest fixtures for labstock backend tests.

Provides a file-backed SQLite database (so threads get real, separate
connections), per-test table wipes, reference labs and an item factory.
"""

import threading

import pytest
from labstock import create_app
from labstock.extensions import db
from labstock.models import Department, Lab, Item


@pytest.fixture(scope='session')
def app(tmp_path_factory):
    """Create application for testing."""
    db_path = tmp_path_factory.mktemp("labstock") / "ledger.db"
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{db_path}",
        'SQLALCHEMY_ENGINE_OPTIONS': {
            'connect_args': {'timeout': 15, 'check_same_thread': False},
        },
        'LEDGER_MAX_ATTEMPTS': 8,
        'LEDGER_RETRY_BACKOFF': 0.01,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema (Core deletes bypass the stock log guard)
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()
        db.session.remove()


@pytest.fixture(scope='function')
def department(db_session):
    dept = Department(name="Chemistry", code="CHEM")
    db_session.add(dept)
    db_session.commit()
    return dept


@pytest.fixture(scope='function')
def other_department(db_session):
    dept = Department(name="Biology", code="BIO")
    db_session.add(dept)
    db_session.commit()
    return dept


@pytest.fixture(scope='function')
def lab_a(db_session, department):
    lab = Lab(department_id=department.id, name="Organic Lab", code="CHEM-A", is_active=True)
    db_session.add(lab)
    db_session.commit()
    return lab


@pytest.fixture(scope='function')
def lab_b(db_session, department):
    lab = Lab(department_id=department.id, name="Analytical Lab", code="CHEM-B", is_active=True)
    db_session.add(lab)
    db_session.commit()
    return lab


@pytest.fixture(scope='function')
def foreign_lab(db_session, other_department):
    """A lab in a different department."""
    lab = Lab(department_id=other_department.id, name="Microbiology Lab", code="BIO-A", is_active=True)
    db_session.add(lab)
    db_session.commit()
    return lab


@pytest.fixture(scope='function')
def make_item(db_session, lab_a):
    """Factory registering an item directly (registration is outside the ledger)."""
    def _make(
        name="Ethanol 96%",
        lab=None,
        quantity=10,
        minimum_quantity=3,
        expiry_date=None,
        item_type="consumable",
        unit="L",
    ):
        item = Item(
            lab_id=(lab or lab_a).id,
            name=name,
            type=item_type,
            unit=unit,
            quantity=quantity,
            minimum_quantity=minimum_quantity,
            expiry_date=expiry_date,
        )
        db_session.add(item)
        db_session.commit()
        return item

    return _make


@pytest.fixture(scope='function')
def item(make_item):
    """Ethanol in lab A: quantity 10, minimum 3."""
    return make_item()


@pytest.fixture(scope='function')
def run_in_thread(app):
    """
    Run fn in another thread with its own app context (and so its own
    session and connection). Blocks until it finishes; re-raises its error.
    """
    def _run(fn):
        outcome = {}

        def worker():
            with app.app_context():
                try:
                    outcome["result"] = fn()
                except Exception as e:
                    outcome["error"] = e
                finally:
                    db.session.remove()

        t = threading.Thread(target=worker)
        t.start()
        t.join()
        if "error" in outcome:
            raise outcome["error"]
        return outcome.get("result")

    return _run
