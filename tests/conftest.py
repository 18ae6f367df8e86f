# conftest.py
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["MY_API_KEYS"] = "test-key"

from datetime import date, timedelta
from decimal import Decimal

import pytest
from httpx import AsyncClient
from httpx._transports.asgi import ASGITransport  # required for ASGI testing
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.main import app
from app.model import DossierSubmission, TreatmentSubmission
from app.reimbursement_database import get_db, Base, Dossier, ReferenceMedication, Treatment

SQLALCHEMY_DATABASE_URL = "sqlite://"
engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

CATALOG_HEADER = "CODE,NOM,DCI1,DOSAGE1,UNITE_DOSAGE1,FORME,PRESENTATION,PPV,PH,PRIX_BR,PRINCEPS_GENERIQUE,TAUX_REMBOURSEMENT"


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


app.dependency_overrides[get_db] = override_get_db


@pytest.fixture
def db_session():
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def seed_catalog(db_session):
    products = [
        ReferenceMedication(code=1001, name="PARACETAMOL", normalized_name="PARACETAMOL",
                            active_ingredient="PARACETAMOL", base_price=Decimal("50.0"),
                            reimbursement_rate=Decimal("0.80")),
        ReferenceMedication(code=1002, name="IBUPROFEN", normalized_name="IBUPROFEN",
                            active_ingredient="IBUPROFENE", base_price=Decimal("75.0"),
                            reimbursement_rate=Decimal("0.70")),
    ]
    db_session.add_all(products)
    db_session.commit()
    return products


@pytest.fixture(scope="module")
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def client(anyio_backend, db_session):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", headers={"X-API-Key": "test-key"}) as ac:
        yield ac


@pytest.fixture
def catalog_file(tmp_path):
    def write(*rows):
        path = tmp_path / "ref_medications.csv"
        path.write_text("\n".join([CATALOG_HEADER, *rows]) + "\n", encoding="utf-8")
        return path
    return write


def catalog_row(code, name, price, rate, dci="DCI"):
    return f'{code},"{name}",{dci},500,MG,COMPRIME,BOITE DE 10,{price},{price},{price},P,{rate}'


def make_treatment(barcode=1001, name="Paracetamol", price="50.0", medication_type="analgesic", position=0):
    return Treatment(
        position=position,
        barcode=barcode,
        medication_name=name,
        medication_type=medication_type,
        price=Decimal(price),
        exists_in_catalog=False,
    )


def make_dossier(**kwargs):
    treatments = kwargs.pop("treatments", None)
    base = dict(
        affiliation_number="AFF-001",
        insured_name="Karim Alaoui",
        registration_number="IMM-42",
        beneficiary_name="Salma Alaoui",
        relationship_to_insured="child",
        submission_date=date.today() - timedelta(days=1),
        treatment_date=date.today() - timedelta(days=3),
        attachment_count=2,
        consultation_price=Decimal("150.00"),
        total_cost=Decimal("275.00"),
        reimbursed_amount=None,
    )
    base.update(kwargs)
    dossier = Dossier(**base)
    dossier.treatments = [make_treatment()] if treatments is None else treatments
    return dossier


def make_submission(affiliation_number="AFF-001", treatments=None, **kwargs):
    if treatments is None:
        treatments = [
            TreatmentSubmission(barcode=1001, medication_name="Paracétamol", medication_type="analgesic", price=Decimal("50.0")),
            TreatmentSubmission(barcode=1002, medication_name="Ibuprofen", medication_type="anti-inflammatory", price=Decimal("75.0")),
        ]
    base = dict(
        affiliation_number=affiliation_number,
        insured_name="Karim Alaoui",
        registration_number="IMM-42",
        relationship_to_insured="spouse",
        total_cost=Decimal("275.00"),
        consultation_price=Decimal("150.00"),
        attachment_count=3,
        beneficiary_name="Nadia Alaoui",
        submission_date=date.today() - timedelta(days=2),
        treatments=treatments,
    )
    base.update(kwargs)
    return DossierSubmission(**base)
