import os
import tempfile
from datetime import date
from types import SimpleNamespace

os.environ.setdefault(
    "DATABASE_URL", f"sqlite:///{os.path.join(tempfile.gettempdir(), 'agenda_pytest.db')}"
)
os.environ.setdefault("NOTIFY_EMAIL_ENABLED", "0")
os.environ.setdefault("NOTIFY_WHATSAPP_ENABLED", "0")
os.environ.setdefault("EVENT_BUS_ENABLED", "0")

import pytest  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from agenda import models  # noqa: E402,F401
from agenda.db import Base, create_db_engine  # noqa: E402
from agenda.models import (  # noqa: E402
    Branch,
    Client,
    Employee,
    EmployeeWorkRange,
    Service,
    Tenant,
)

MONDAY = date(2026, 3, 2)
NINE = 9 * 60
FIVE_PM = 17 * 60


@pytest.fixture
def engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'test_agenda.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def add_employee(db, tenant, branch, name, services, weekdays=range(5), ranges=((NINE, FIVE_PM),), is_active=True):
    employee = Employee(
        tenant_id=tenant.id,
        branch_id=branch.id,
        name=name,
        is_active=is_active,
    )
    employee.services = list(services)
    db.add(employee)
    db.flush()
    for weekday in weekdays:
        for start_min, end_min in ranges:
            db.add(
                EmployeeWorkRange(
                    tenant_id=tenant.id,
                    employee_id=employee.id,
                    weekday=weekday,
                    start_min=start_min,
                    end_min=end_min,
                )
            )
    db.flush()
    return employee


def build_tenant(db, slug):
    tenant = Tenant(slug=slug, name=slug.title())
    db.add(tenant)
    db.flush()

    haircut = Service(tenant_id=tenant.id, name="Corte", duration_min=30, total_sessions=1, price=15)
    laser = Service(tenant_id=tenant.id, name="Laser", duration_min=60, total_sessions=3, price=90)
    manicure = Service(tenant_id=tenant.id, name="Manicure", duration_min=45, total_sessions=1, price=20)
    db.add_all([haircut, laser, manicure])
    db.flush()

    branch = Branch(tenant_id=tenant.id, name="Sabaneta", address="Av. Las Vegas 77 Sur")
    branch.services = [haircut, laser, manicure]
    db.add(branch)
    db.flush()

    ana = add_employee(db, tenant, branch, "Ana", [haircut, laser, manicure])
    bea = add_employee(db, tenant, branch, "Bea", [haircut, laser])

    client = Client(tenant_id=tenant.id, name="Carla", phone="+57 300 123 4567", email="carla@example.com")
    db.add(client)
    db.flush()

    ids = SimpleNamespace(
        tenant_id=tenant.id,
        tenant_slug=tenant.slug,
        branch_id=branch.id,
        haircut_id=haircut.id,
        laser_id=laser.id,
        manicure_id=manicure.id,
        ana_id=ana.id,
        bea_id=bea.id,
        client_id=client.id,
    )
    db.commit()
    return ids


@pytest.fixture
def world(db):
    return build_tenant(db, "salon-norte")


@pytest.fixture
def other_world(db, world):
    return build_tenant(db, "salon-sur")
