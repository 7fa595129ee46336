# simkube/api/v1/api.py
from fastapi import APIRouter
from simkube.api.v1.endpoints import mutate

api_router = APIRouter()

api_router.include_router(mutate.router, tags=["Admission"])
