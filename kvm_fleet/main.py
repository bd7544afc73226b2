import logging

from fastapi import FastAPI

from kvm_fleet.api import router
from kvm_fleet.db import initialize_state
from kvm_fleet.logging_config import configure_logging


logger = logging.getLogger(__name__)


app = FastAPI(title="KVM Fleet State")
app.include_router(router)


@app.on_event("startup")
def startup() -> None:
    configure_logging()
    initialize_state()
    logger.info("kvm-fleet state api startup complete")
