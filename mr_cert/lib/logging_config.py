"""JSON logging for the certificate authority server.

Records are single JSON objects. Besides the message fields, a record may
carry the certificate it concerns, passed with ``extra=cert_context(...)``:

    LOGGER.info("Stored", extra=cert_context("web", cert_type="server"))
"""

import logging
from typing import Any

from pythonjsonlogger.json import JsonFormatter

RECORD_FIELDS = frozenset({"timestamp", "level", "message", "exc_info", "funcName", "lineno"})

# Set through ``extra``; left out of the record when unset
CONTEXT_FIELDS = frozenset({"certificate", "cert_type", "signer", "command", "returncode"})


class CertLogFormatter(JsonFormatter):
    """JSON formatter keeping the message fields and any certificate context.

    Drops the process, thread and module fields the base formatter adds.
    """

    def add_fields(self, log_data, record, message_dict):
        super().add_fields(log_data, record, message_dict)

        if "levelname" in log_data:
            log_data["level"] = log_data.pop("levelname")

        for key in list(log_data):
            if key in RECORD_FIELDS:
                continue
            if key not in CONTEXT_FIELDS or log_data[key] is None:
                del log_data[key]


def cert_context(
    certificate: str | None = None,
    cert_type: str | None = None,
    signer: str | None = None,
    command: str | None = None,
    returncode: int | None = None,
) -> dict[str, Any]:
    """Build the ``extra`` mapping for a log call about one certificate.

    Args:
        certificate: Bundle name
        cert_type: Category of the bundle
        signer: ``<type>/<name>`` of the signing bundle
        command: openssl subcommand, e.g. ``ca``
        returncode: Exit status of that subcommand
    """
    return {
        "certificate": certificate,
        "cert_type": None if cert_type is None else str(cert_type),
        "signer": signer,
        "command": command,
        "returncode": returncode,
    }


def _setup_logger() -> logging.Logger:
    logger = logging.getLogger("mr_cert")

    # Module reloads must not add a second handler
    if logger.handlers:
        return logger

    handler = logging.StreamHandler()
    handler.setFormatter(
        CertLogFormatter(
            fmt="%(timestamp)s %(levelname)s %(funcName)s %(lineno)d %(message)s",
            timestamp=True,
        )
    )

    logger.setLevel(logging.INFO)
    logger.addHandler(handler)
    logger.propagate = False

    return logger


def configure_log_level(level: str) -> None:
    """Set the level of the shared logger, e.g. ``"DEBUG"``.

    Raises:
        ValueError: If the level name is unknown
    """
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        raise ValueError(f"unknown log level: {level}")
    LOGGER.setLevel(resolved)


LOGGER = _setup_logger()
