# app/api/v1/router.py
from fastapi import APIRouter

from app.api.v1.endpoints import (
    auth,
    shared_access,
    guest,
    patients,
    professionals,
    clinics,
    documents,
    chat,
    summaries,
)

api_router = APIRouter()

api_router.include_router(auth.router, prefix="/auth", tags=["auth"])
api_router.include_router(shared_access.router, prefix="/shared-access", tags=["shared-access"])
api_router.include_router(guest.router, prefix="/guest", tags=["guest"])
api_router.include_router(patients.router, prefix="/patients", tags=["patients"])
api_router.include_router(professionals.router, prefix="/professionals", tags=["professionals"])
api_router.include_router(clinics.router, prefix="/clinics", tags=["clinics"])
api_router.include_router(documents.router, prefix="/documents", tags=["documents"])
api_router.include_router(chat.router, prefix="/chat", tags=["chat"])
api_router.include_router(summaries.router, prefix="/summaries", tags=["summaries"])
