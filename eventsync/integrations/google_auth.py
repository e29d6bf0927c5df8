"""
EventSync — Google Calendar Authentication.

Builds a read-only Google Calendar API v3 service from credentials supplied
by the operator: either a service-account key or an authorized-user token,
given inline as JSON or as a path to a JSON file. No interactive consent
flow runs here.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from google.auth.transport.requests import Request
from google.oauth2 import service_account
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/calendar.readonly"]


def load_credentials_info(raw: str) -> dict:
    """Parse GOOGLE_CREDENTIALS: inline JSON or a path to a JSON file."""
    raw = raw.strip()
    if not raw:
        raise FileNotFoundError(
            "GOOGLE_CREDENTIALS is not set. Provide a service-account key "
            "or an authorized-user token (JSON or path)."
        )
    if raw.startswith("{"):
        return json.loads(raw)

    path = Path(raw)
    if not path.exists():
        raise FileNotFoundError(f"Google credentials file not found at {path}.")
    return json.loads(path.read_text())


def get_calendar_service(credentials_json: str):
    """Authenticate and return a Google Calendar API v3 service object.

    Flow:
    1. Parse the credentials (inline JSON or file).
    2. Service-account keys are used as-is; user tokens are refreshed if expired.
    3. Build the discovery client.
    """
    info = load_credentials_info(credentials_json)

    if info.get("type") == "service_account":
        creds = service_account.Credentials.from_service_account_info(info, scopes=SCOPES)
        logger.debug("Loaded service account %s", info.get("client_email", "?"))
    else:
        creds = Credentials.from_authorized_user_info(info, SCOPES)
        if creds.expired and creds.refresh_token:
            creds.refresh(Request())
            logger.info("Token refreshed successfully")

    service = build("calendar", "v3", credentials=creds, cache_discovery=False)
    logger.info("Google Calendar service built successfully")
    return service
