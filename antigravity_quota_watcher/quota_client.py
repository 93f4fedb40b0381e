"""Quota polling against a discovered language server endpoint."""
from __future__ import annotations

import logging
import warnings
from typing import Any

import requests
from urllib3.exceptions import InsecureRequestWarning

from .discovery import CLIENT_METADATA, STATUS_PATH, DiscoveryOutcome, service_headers
from .i18n import T

log = logging.getLogger(__name__)

REQUEST_TIMEOUT = 10


def status_urls(endpoint: DiscoveryOutcome) -> list[str]:
    """Return the GetUserStatus URLs to try: HTTPS first, then the plain HTTP port."""
    urls = [f'https://127.0.0.1:{endpoint.https_port}{STATUS_PATH}']
    if endpoint.http_port != endpoint.https_port:
        urls.append(f'http://127.0.0.1:{endpoint.http_port}{STATUS_PATH}')
    return urls


def fetch_user_status(endpoint: DiscoveryOutcome) -> dict[str, Any]:
    """Fetch the raw user status (plan and quota data) from the language server.

    Returns
    -------
    dict
        Decoded JSON response, or ``{'error': <localized message>}`` when
        every URL failed.  ``'auth_error': True`` marks a rejected token,
        which means the language server restarted with a new one.
    """
    error: dict[str, Any] = {'error': T['connection_error']}

    for url in status_urls(endpoint):
        try:
            with warnings.catch_warnings():
                warnings.simplefilter('ignore', InsecureRequestWarning)
                resp = requests.post(
                    url, json={'metadata': CLIENT_METADATA}, headers=service_headers(endpoint.token),
                    timeout=REQUEST_TIMEOUT, verify=False,
                )
            resp.raise_for_status()
            return resp.json()
        except requests.HTTPError as e:
            code = e.response.status_code if e.response is not None else 0
            log.warning('GetUserStatus via %s failed with HTTP %s', url, code or '?')
            error = {'error': T['http_error'].format(code=code or '?')}
            if code in (401, 403):
                error['auth_error'] = True
        except (requests.RequestException, ValueError) as e:
            log.warning('GetUserStatus via %s failed: %s', url, e)
            if not error.get('auth_error'):
                error = {'error': T['connection_error']}

    return error
