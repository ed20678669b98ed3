"""
HTTP calls to services: administrative JSON-RPC, readiness probes and reload hooks.

All helpers here are best-effort: connection problems and error responses are logged and reported
as a negative result rather than raised.
"""

import logging
from typing import Any, Dict, List, Optional

import requests


LOG = logging.getLogger(__name__)


def rpc_call(session: requests.Session, url: str, method: str, params: Optional[List[Any]] = None,
             timeout: float = 5.0) -> Optional[Dict[str, Any]]:
    """
    Make a JSON-RPC call, returning the decoded response, or `None` if there wasn't a usable one.
    """
    payload = {"jsonrpc": "2.0", "method": method, "params": params or [], "id": 1}
    LOG.debug("RPC: %s %s", url, method)
    try:
        resp = session.post(url, json=payload, timeout=timeout)
        resp.raise_for_status()
        data = resp.json()
    except (requests.RequestException, ValueError) as ex:
        LOG.debug("RPC %s to %s failed: %s", method, url, ex)
        return None
    if not isinstance(data, dict):
        return None
    if "error" in data:
        LOG.debug("RPC %s to %s returned error: %r", method, url, data["error"])
    return data


def is_ready(session: requests.Session, url: str, timeout: float = 5.0) -> bool:
    """
    Check that a URL answers a GET request with a successful status.
    """
    try:
        resp = session.get(url, timeout=timeout)
    except requests.RequestException as ex:
        LOG.debug("Probe of %s failed: %s", url, ex)
        return False
    return resp.ok


def trigger(session: requests.Session, url: str, timeout: float = 10.0) -> bool:
    """
    Send an empty POST request to a hook URL, e.g. a config reload endpoint.
    """
    try:
        resp = session.post(url, timeout=timeout)
    except requests.RequestException as ex:
        LOG.debug("Trigger of %s failed: %s", url, ex)
        return False
    if not resp.ok:
        LOG.debug("Trigger of %s returned %s", url, resp.status_code)
    return resp.ok
