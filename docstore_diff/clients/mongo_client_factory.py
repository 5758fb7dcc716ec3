from __future__ import annotations

import logging
import os
from typing import Any, Optional

from pymongo import MongoClient
from pymongo.uri_parser import parse_uri


_TIMEOUT_ENV_OPTIONS = (
    ("MONGODB_SERVER_SELECTION_TIMEOUT_MS", "serverSelectionTimeoutMS"),
    ("MONGODB_CONNECT_TIMEOUT_MS", "connectTimeoutMS"),
    ("MONGODB_SOCKET_TIMEOUT_MS", "socketTimeoutMS"),
)


def _env_int(name: str) -> int | None:
    raw = os.environ.get(name)
    if raw is None:
        return None
    raw = raw.strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def build_mongo_client(
    uri: str,
    *,
    app_name: str = "docstore-diff",
    logger: Optional[logging.Logger] = None,
) -> MongoClient[Any]:
    """
    Build a PyMongo MongoClient from a URI.

    Handles:
    - Timeouts from MONGODB_*_TIMEOUT_MS env vars, unless the URI already sets them
    - CA bundle from REQUESTS_CA_BUNDLE / SSL_CERT_FILE for TLS inspection proxies
    """
    log = logger or logging.getLogger(__name__)
    kwargs: dict[str, Any] = {}

    parsed = parse_uri(uri)
    hosts = [f"{host}:{port}" for host, port in parsed.get("nodelist", [])]
    option_keys = {k.lower() for k in (parsed.get("options") or {}).keys()}
    log.info(
        "Building MongoClient for hosts=%s database=%s",
        hosts if hosts else ["<unknown-host>"],
        parsed.get("database") or "<default>",
    )

    for env_name, option in _TIMEOUT_ENV_OPTIONS:
        value = _env_int(env_name)
        if value is not None and option.lower() not in option_keys:
            kwargs[option] = value

    # PyMongo does NOT read REQUESTS_CA_BUNDLE or SSL_CERT_FILE on its own.
    if "tlscafile" not in option_keys:
        ca_file = os.environ.get("REQUESTS_CA_BUNDLE") or os.environ.get("SSL_CERT_FILE")
        if ca_file and os.path.isfile(ca_file):
            kwargs["tlsCAFile"] = ca_file
            log.info("Applying MongoClient tlsCAFile from environment: %s", ca_file)

    if "appname" not in option_keys:
        kwargs["appname"] = app_name

    client: MongoClient[Any] = MongoClient(uri, **kwargs)
    log.info(
        "MongoClient created for hosts=%s with kwarg keys=%s",
        hosts if hosts else ["<unknown-host>"],
        sorted(kwargs.keys()),
    )
    return client
