# main.py
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

import config

# Importamos los routers de la capa de infraestructura
from app.infrastructure.api.routers import ksef_router

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - [%(funcName)s] - %(message)s')

app = FastAPI(
    title="API de Descarga de Facturas KSeF",
    description="Sistema para descargar, deduplicar y registrar facturas de KSeF de forma asíncrona.",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(ksef_router.router)


@app.get("/", tags=["Health Check"])
def read_root():
    return {"status": "ok", "message": "Servicio de descarga KSeF operativo"}
