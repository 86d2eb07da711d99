import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from .config import LOG_LEVEL
from .db import init_db
from .errors import ContractError, contract_error_handler
from .routers import admin_contracts, envelopes, public_contracts, signing, templates, webhooks

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

app = FastAPI(title="Studio Sign API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_exception_handler(ContractError, contract_error_handler)


@app.on_event("startup")
def on_startup():
    init_db()


app.include_router(templates.router, prefix="/api/admin/contract-templates", tags=["templates"])
app.include_router(admin_contracts.router, prefix="/api/admin/contracts", tags=["contracts"])
app.include_router(webhooks.router, prefix="/api/admin/webhooks", tags=["webhooks"])
app.include_router(public_contracts.router, prefix="/api", tags=["signer"])
app.include_router(envelopes.router, prefix="/api/envelopes", tags=["envelopes"])
app.include_router(signing.router, prefix="/api/sign", tags=["signing"])


@app.get("/")
def root():
    return {"ok": True, "service": "studio-sign-api"}
