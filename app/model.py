from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import List, Optional, Dict, Any
from datetime import date, datetime
from decimal import Decimal
from enum import Enum


class BatchStatus(str, Enum):
    started = "STARTED"
    completed = "COMPLETED"
    failed = "FAILED"


class TreatmentSubmission(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    barcode: int = Field(..., alias="codeBarre", description="Barcode / product code of the medication")
    medication_name: Optional[str] = Field(None, alias="nomMedicament")
    medication_type: Optional[str] = Field(None, alias="typeMedicament", description="e.g. analgesic, antibiotic")
    price: Decimal = Field(..., alias="prixMedicament")
    exists: bool = Field(False, alias="existe", description="Whether the medication exists in the reference catalog")

    @field_validator("medication_name", "medication_type")
    def strip_strings(cls, v):
        if isinstance(v, str):
            return v.strip()
        return v


class DossierSubmission(BaseModel):
    """Inbound claim dossier. Business rules are checked later by the pipeline."""
    model_config = ConfigDict(populate_by_name=True)

    affiliation_number: Optional[str] = Field(None, alias="numeroAffiliation")
    insured_name: Optional[str] = Field(None, alias="nomAssure")
    registration_number: Optional[str] = Field(None, alias="immatriculation")
    relationship_to_insured: Optional[str] = Field(None, alias="lienParente", description="spouse, child, ...")
    total_cost: Optional[Decimal] = Field(None, alias="montantTotalFrais")
    consultation_price: Optional[Decimal] = Field(None, alias="prixConsultation")
    attachment_count: int = Field(0, alias="nombrePiecesJointes")
    beneficiary_name: Optional[str] = Field(None, alias="nomBeneficiaire")
    submission_date: Optional[date] = Field(None, alias="dateDepotDossier")
    treatment_date: Optional[date] = Field(None, alias="dateTraitement")
    treatments: List[TreatmentSubmission] = Field(default_factory=list, alias="traitements")

    @field_validator("treatments", mode="before")
    def none_as_empty(cls, v):
        return [] if v is None else v


class TreatmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    barcode: int
    medication_name: Optional[str]
    medication_type: Optional[str]
    price: Optional[Decimal]
    exists_in_catalog: bool


class DossierOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    affiliation_number: str
    insured_name: Optional[str]
    beneficiary_name: Optional[str]
    relationship_to_insured: Optional[str]
    submission_date: Optional[date]
    treatment_date: Optional[date]
    attachment_count: Optional[int]
    consultation_price: Optional[Decimal]
    total_cost: Optional[Decimal]
    reimbursed_amount: Optional[Decimal]
    treatments: List[TreatmentOut]


class ReferenceMedicationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    code: int
    name: str
    active_ingredient: Optional[str]
    base_price: Decimal
    reimbursement_rate: Decimal


class BatchRunOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    job_name: str
    status: BatchStatus
    started_at: Optional[datetime]
    finished_at: Optional[datetime]
    read_count: int
    processed_count: int
    failed_count: int
    written_count: int
    skipped_count: int
    errors: Optional[List[Dict[str, Any]]] = None
    exit_message: Optional[str] = None


class BatchResponse(BaseModel):
    message: str
    run: BatchRunOut
