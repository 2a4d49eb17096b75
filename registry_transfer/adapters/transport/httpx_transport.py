"""Certificate-authenticated HTTP transport for the exchange endpoint.

Each resource is submitted with one blocking HTTP PUT over mutual TLS.
Success is HTTP 200 exactly; any other status (other 2xx included) or a
transport-level error is reported as a failed SubmissionResult. Nothing is
retried here: failed instances stay unsent and are picked up by the next run.

Security Impact:
    - The client certificate, key and passphrase come from the run's ConnectionContext
    - Server certificates are verified against the default trust store
    - Response bodies are carried in failure detail for logging

Architecture:
    - Implements TransportPort (Hexagonal Architecture)
    - Synchronous httpx.Client; one client per run, closed at run end
    - An httpx transport can be injected for tests (httpx.MockTransport)
"""

import json
import logging
import ssl
import time
from typing import Optional

import httpx

from registry_transfer.domain.models import ConnectionContext
from registry_transfer.domain.ports import (
    SubmissionResult,
    TransportError,
    TransportErrorDetail,
    TransportPort,
)

logger = logging.getLogger(__name__)

MAX_REDIRECTS = 10
JSON_HEADERS = {"Content-Type": "application/json"}


def build_ssl_context(connection: ConnectionContext) -> ssl.SSLContext:
    """Create an SSLContext presenting the run's client certificate.

    Raises:
        TransportError: If the certificate, key or passphrase cannot be loaded
    """
    context = ssl.create_default_context()
    password = connection.cert_password.get_secret_value() if connection.cert_password else None
    try:
        context.load_cert_chain(certfile=connection.cert_path, keyfile=connection.key_path, password=password)
    except (ssl.SSLError, OSError) as e:
        raise TransportError(f"Could not load client certificate: {e}") from e
    return context


class HttpxTransportClient(TransportPort):
    """httpx implementation of TransportPort.

    Parameters:
        connection: Connection values for this run
        timeout: Per-request timeout in seconds
        transport: Optional httpx transport (tests); skips certificate loading

    Example Usage:
        ```python
        with HttpxTransportClient(connection) as client:
            result = client.put(connection.resource_url("/Condition/dx-12-1"), document)
            if not result.success:
                logger.error(result.error.to_dict())
        ```
    """

    def __init__(
        self,
        connection: ConnectionContext,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.connection = connection
        client_kwargs = {
            "timeout": timeout,
            "follow_redirects": True,
            "max_redirects": MAX_REDIRECTS,
            "headers": JSON_HEADERS,
        }
        if transport is not None:
            client_kwargs["transport"] = transport
        else:
            client_kwargs["verify"] = build_ssl_context(connection)
        self._client = httpx.Client(**client_kwargs)

    def put(self, url: str, document: dict) -> SubmissionResult:
        """PUT one resource document; HTTP 200 is the only success."""
        body = json.dumps(document, ensure_ascii=False).encode("utf-8")
        started = time.monotonic()

        try:
            response = self._client.put(url, content=body)
        except httpx.HTTPError as e:
            elapsed_ms = round((time.monotonic() - started) * 1000, 1)
            detail = TransportErrorDetail(
                http_code=0,
                response="",
                info={"url": url, "method": "PUT", "elapsed_ms": elapsed_ms},
                error=str(e) or type(e).__name__,
            )
            logger.debug(f"PUT {url} failed without a response: {detail.error}")
            return SubmissionResult(success=False, error=detail)

        elapsed_ms = round((time.monotonic() - started) * 1000, 1)
        if response.status_code == 200:
            logger.debug(f"PUT {url} -> 200 in {elapsed_ms} ms")
            return SubmissionResult(success=True)

        detail = TransportErrorDetail(
            http_code=response.status_code,
            response=response.text,
            info={
                "url": str(response.url),
                "method": "PUT",
                "elapsed_ms": elapsed_ms,
                "http_version": response.http_version,
                "redirects": len(response.history),
            },
            error=response.reason_phrase or f"HTTP {response.status_code}",
        )
        logger.debug(f"PUT {url} -> {response.status_code} in {elapsed_ms} ms")
        return SubmissionResult(success=False, error=detail)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> 'HttpxTransportClient':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
