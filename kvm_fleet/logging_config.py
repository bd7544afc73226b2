import logging

from kvm_fleet.config import get_settings


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_configured = False


def configure_logging(level: str | None = None) -> None:
    global _configured
    resolved = (level or get_settings().log_level).upper()
    if _configured:
        logging.getLogger().setLevel(resolved)
        return
    logging.basicConfig(level=resolved, format=LOG_FORMAT)
    # paramiko logs every transport negotiation at INFO.
    logging.getLogger("paramiko").setLevel(logging.WARNING)
    _configured = True
