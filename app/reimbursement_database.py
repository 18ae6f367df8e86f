from sqlalchemy import (create_engine, Column, Integer, BigInteger, String, Boolean, Date, ForeignKey, JSON, Numeric)
from sqlalchemy.types import DateTime
from sqlalchemy.pool import StaticPool
from datetime import datetime
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from app.config import get_database_url, get_sql_echo
Base = declarative_base()


class ReferenceMedication(Base):
    __tablename__ = "reference_medications"

    code = Column(BigInteger, primary_key=True, autoincrement=False)
    name = Column(String(255), nullable=False)
    normalized_name = Column(String(255), nullable=False, index=True)
    active_ingredient = Column(String(255))
    base_price = Column(Numeric(12, 2), nullable=False)
    # stored as a 0..1 fraction
    reimbursement_rate = Column(Numeric(7, 4), nullable=False)
    imported_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f"<ReferenceMedication code={self.code} name={self.name!r} price={self.base_price} rate={self.reimbursement_rate}>"


class Dossier(Base):
    __tablename__ = "dossiers"

    affiliation_number = Column(String(50), primary_key=True)
    insured_name = Column(String(150))
    registration_number = Column(String(50))
    beneficiary_name = Column(String(150))
    relationship_to_insured = Column(String(50))
    submission_date = Column(Date)
    treatment_date = Column(Date)
    attachment_count = Column(Integer, default=0)
    consultation_price = Column(Numeric(12, 2))
    total_cost = Column(Numeric(12, 2))
    reimbursed_amount = Column(Numeric(14, 4), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    treatments = relationship(
        "Treatment",
        cascade="all, delete-orphan",
        back_populates="dossier",
        order_by="Treatment.position",
    )

    def __repr__(self):
        return f"<Dossier {self.affiliation_number} treatments={len(self.treatments)} reimbursed={self.reimbursed_amount}>"


class Treatment(Base):
    __tablename__ = "treatments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    dossier_id = Column(String(50), ForeignKey("dossiers.affiliation_number", ondelete="CASCADE"), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    barcode = Column(BigInteger, nullable=False)
    medication_name = Column(String(255))
    medication_type = Column(String(100))
    price = Column(Numeric(12, 2))
    exists_in_catalog = Column(Boolean, default=False)

    dossier = relationship("Dossier", back_populates="treatments")

    def __repr__(self):
        return f"<Treatment barcode={self.barcode} name={self.medication_name!r} price={self.price}>"


class BatchRun(Base):
    __tablename__ = "batch_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_name = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False)
    started_at = Column(DateTime, default=datetime.utcnow)
    finished_at = Column(DateTime)
    read_count = Column(Integer, default=0)
    processed_count = Column(Integer, default=0)
    failed_count = Column(Integer, default=0)
    written_count = Column(Integer, default=0)
    skipped_count = Column(Integer, default=0)
    errors = Column(JSON)
    exit_message = Column(String)


#engine and sessions
def _engine_options(url: str) -> dict:
    options = {"echo": get_sql_echo()}
    if url.startswith("sqlite"):
        options["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            options["poolclass"] = StaticPool
    return options


DATABASE_URL = get_database_url()
engine = create_engine(DATABASE_URL, **_engine_options(DATABASE_URL))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


#to create tables
Base.metadata.create_all(engine)
