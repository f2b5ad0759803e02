"""Exception types and human-readable hint mapping."""

from __future__ import annotations

import re
from typing import Optional

import requests


class VpsOpsError(Exception):
    """Base class for orchestrator errors."""


class ValidationError(VpsOpsError, ValueError):
    """Bad input caught before any I/O."""


class UnsafePathError(ValidationError):
    """Remote path contains shell metacharacters."""


class PathTraversalError(ValidationError):
    """Resolved backup path escapes the server's backup namespace."""


class ProviderError(VpsOpsError):
    """A cloud vendor API call failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


PROVIDER_URLS = {
    "hetzner": {
        "token": "https://console.hetzner.cloud/projects -> API Tokens",
        "billing": "https://console.hetzner.cloud/billing",
    },
    "digitalocean": {
        "token": "https://cloud.digitalocean.com/account/api/tokens",
        "billing": "https://cloud.digitalocean.com/account/billing",
    },
    "vultr": {
        "token": "https://my.vultr.com/settings/#settingsapi",
        "billing": "https://my.vultr.com/billing",
    },
    "linode": {
        "token": "https://cloud.linode.com/profile/tokens",
        "billing": "https://cloud.linode.com/account/billing",
    },
}

DISPLAY_NAMES = {
    "hetzner": "Hetzner Cloud",
    "digitalocean": "DigitalOcean",
    "vultr": "Vultr",
    "linode": "Linode (Akamai)",
}


def get_error_message(error: BaseException) -> str:
    message = str(error)
    return message or error.__class__.__name__


def get_provider_display_name(provider: str) -> str:
    return DISPLAY_NAMES.get(provider, provider)


def _status_code_of(error: BaseException) -> Optional[int]:
    if isinstance(error, ProviderError):
        return error.status_code
    if isinstance(error, requests.HTTPError) and error.response is not None:
        return error.response.status_code
    return None


def map_provider_error(error: BaseException, provider: str) -> str:
    """
    Turn a provider failure into a remediation hint.

    Returns an empty string when nothing more useful than the error
    message itself can be said.
    """
    urls = PROVIDER_URLS.get(provider, {})
    display_name = get_provider_display_name(provider)
    status = _status_code_of(error)

    if status in (401, 403):
        token_url = urls.get("token", "your provider dashboard")
        return f"API token is invalid or expired. Generate a new Read & Write token from {token_url}"
    if status == 402:
        billing_url = urls.get("billing", "your provider billing page")
        return f"Insufficient account balance. Add funds at {billing_url}"
    if status == 404:
        return "Resource not found. The server may have been deleted or the ID is incorrect."
    if status == 409:
        return "Resource conflict. This name or resource may already be in use."
    if status == 422:
        return "Invalid request parameters. Please check your input and try again."
    if status == 429:
        return f"{display_name} rate limit exceeded. Wait a moment and try again."
    if status is not None and status >= 500:
        return f"{display_name} API is experiencing issues (HTTP {status}). Try again later."

    if isinstance(error, requests.Timeout):
        return f"{display_name} API request timed out. Check your connection and try again."
    if isinstance(error, requests.ConnectionError):
        return f"Cannot reach {display_name} API. Check your internet connection."

    message = get_error_message(error)
    if re.search(r"insufficient.*(balance|fund|credit)", message, re.IGNORECASE):
        billing_url = urls.get("billing", "your provider billing page")
        return f"Insufficient account balance. Add funds at {billing_url}"
    if re.search(r"unavailable|not available|sold out", message, re.IGNORECASE):
        return "This server type is not available in the selected region. Try a different size or region."

    return ""


SSH_HINTS = (
    (re.compile(r"connection refused", re.I),
     "SSH connection refused. Check that the server is running and port 22 is open."),
    (re.compile(r"permission denied", re.I),
     "SSH authentication failed. Make sure your public key is installed for root@{ip}."),
    (re.compile(r"host key verification failed|remote host identification has changed", re.I),
     "Host key mismatch. If the server was rebuilt, run: ssh-keygen -R {ip}"),
    (re.compile(r"timed out|no route to host", re.I),
     "Cannot reach {ip}. Check the IP address and your network connection."),
    (re.compile(r"could not resolve|name or service not known", re.I),
     "Cannot resolve host. Check the server address."),
    (re.compile(r"no such file or directory.*ssh|ssh.*not found", re.I),
     "The ssh client is not installed or not on PATH."),
)


def map_ssh_error(error, ip: str) -> str:
    """Map an SSH failure (exception or stderr text) to a hint."""
    message = error if isinstance(error, str) else get_error_message(error)
    for pattern, hint in SSH_HINTS:
        if pattern.search(message):
            return hint.format(ip=ip)
    return ""
