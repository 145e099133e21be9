"""
Ownership lookups shared by services.

Every mutation of a doctor's schedule or a patient's appointment is gated on
the authenticated user owning the profile involved.
"""

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from auth.dependencies import UserContext
from models import Doctor, Patient


def get_doctor_or_404(db: Session, doctor_id: int) -> Doctor:
    doctor = db.query(Doctor).filter(Doctor.id == doctor_id).first()
    if not doctor:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Doctor not found"
        )
    return doctor


def get_owned_doctor(db: Session, doctor_id: int, user: UserContext) -> Doctor:
    """
    Load a doctor the caller owns.

    Raises:
        HTTPException: 404 if the doctor does not exist, 403 if the caller
            is not the doctor's user
    """
    doctor = get_doctor_or_404(db, doctor_id)
    if doctor.user_id != user.user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You can only manage your own schedule"
        )
    return doctor


def get_patient_for_user(db: Session, user: UserContext) -> Patient:
    """Patient profile of the authenticated user (404 if the user has none)."""
    patient = db.query(Patient).filter(Patient.user_id == user.user_id).first()
    if not patient:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Patient not found"
        )
    return patient
