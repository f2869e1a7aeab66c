import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from gateway.app import config
from gateway.app.api import account_endpoints, admin_endpoints, health_endpoints
from gateway.app.auth.errors import GatewayError, gateway_error_handler
from gateway.app.auth.rate_limiting import AdmissionMiddleware
from gateway.app.dependencies import initialize_on_startup, shutdown_dependencies
from gateway.app.utils.observability import configure_logging, configure_metrics

configure_logging()

app = FastAPI(title="Admission Gateway")
configure_metrics(app)

# Fingerprinting runs inside CORS so preflight requests never touch the limiter.
app.add_middleware(AdmissionMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=list(config.CORS_ALLOW_ORIGINS),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(GatewayError, gateway_error_handler)

app.include_router(health_endpoints.router)
app.include_router(account_endpoints.router)
app.include_router(admin_endpoints.router)


@app.on_event("startup")
async def startup_event():
    logging.info("Application starting up, initializing admission stores...")
    await initialize_on_startup()
    logging.info("Dependencies initialized successfully")


@app.on_event("shutdown")
async def shutdown_event():
    await shutdown_dependencies()
