"""Connection Provisioner - ephemeral client certificate material.

The endpoint requires mutual TLS. When certificate and key are configured
inline, they are written to files in a private per-run temporary directory
for the lifetime of one run and deleted exactly once at run end, whether
the run finished normally or not.

Security Impact:
    - Files are created with mode 0600 inside a 0700 directory
    - Each run gets its own directory, so concurrent runs never share paths
    - Externally managed certificate files (cert_path/key_path) are never deleted

Architecture:
    - Infrastructure layer; yields a domain ConnectionContext
    - provision_connection() is the context manager used by the trigger
"""

import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from registry_transfer.domain.models import ConnectionContext
from registry_transfer.domain.ports import CertificateError
from registry_transfer.infrastructure.config_manager import EndpointConfig

logger = logging.getLogger(__name__)

CERT_FILE_NAME = "client-cert.pem"
KEY_FILE_NAME = "client-key.pem"


class CertificateProvisioner:
    """Materializes certificate material for one run and cleans it up.

    Example Usage:
        ```python
        provisioner = CertificateProvisioner(endpoint_config)
        context = provisioner.open()
        try:
            ...
        finally:
            provisioner.close()
        ```
    """

    def __init__(self, endpoint: EndpointConfig):
        self.endpoint = endpoint
        self._directory: Optional[Path] = None
        self._files: list[Path] = []
        self._context: Optional[ConnectionContext] = None
        self._closed = False

    @property
    def owns_files(self) -> bool:
        """True when this provisioner wrote (and will delete) the certificate files."""
        return self._directory is not None

    def open(self) -> ConnectionContext:
        """Provision certificate files and build the run's ConnectionContext.

        Raises:
            CertificateError: If files cannot be written or configured paths do not exist
        """
        if self._closed:
            raise CertificateError("Certificate provisioner has already been closed")
        if self._context is not None:
            return self._context

        if self.endpoint.cert_pem is not None and self.endpoint.key_pem is not None:
            cert_path, key_path = self._write_inline_material()
        else:
            cert_path, key_path = Path(self.endpoint.cert_path), Path(self.endpoint.key_path)
            for path in (cert_path, key_path):
                if not path.is_file():
                    raise CertificateError(f"Certificate file not found: {path}")
            logger.debug("Using externally managed certificate files")

        self._context = ConnectionContext(
            url=self.endpoint.url,
            cert_path=str(cert_path),
            key_path=str(key_path),
            cert_password=self.endpoint.cert_password,
            submitting_org=self.endpoint.submitting_org,
        )
        return self._context

    def _write_inline_material(self) -> tuple[Path, Path]:
        try:
            self._directory = Path(tempfile.mkdtemp(prefix="registry-transfer-"))
            cert_path = self._write_secret(CERT_FILE_NAME, self.endpoint.cert_pem.get_secret_value())
            key_path = self._write_secret(KEY_FILE_NAME, self.endpoint.key_pem.get_secret_value())
        except OSError as e:
            self.close()
            raise CertificateError(f"Could not write certificate material: {e}") from e
        logger.info(f"Provisioned client certificate files in {self._directory}")
        return cert_path, key_path

    def _write_secret(self, name: str, content: str) -> Path:
        path = self._directory / name
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        self._files.append(path)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        return path

    def close(self) -> None:
        """Delete provisioned files and their directory; later calls do nothing."""
        if self._closed:
            return
        self._closed = True
        self._context = None

        for path in self._files:
            try:
                path.unlink()
                logger.info(f"Deleted certificate file {path.name}")
            except FileNotFoundError:
                logger.warning(f"Certificate file {path} was already gone at cleanup")
            except OSError as e:
                logger.error(f"Could not delete certificate file {path}: {e}")
        self._files.clear()

        if self._directory is not None:
            try:
                self._directory.rmdir()
            except OSError as e:
                logger.warning(f"Could not remove certificate directory {self._directory}: {e}")

    def __enter__(self) -> ConnectionContext:
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


@contextmanager
def provision_connection(endpoint: EndpointConfig) -> Iterator[ConnectionContext]:
    """Context manager yielding the run's ConnectionContext.

    Certificate files written for the run are deleted exactly once on exit,
    normal or exceptional.

    Example:
        ```python
        with provision_connection(config.get_endpoint_config()) as connection:
            with HttpxTransportClient(connection) as transport:
                ...
        ```
    """
    provisioner = CertificateProvisioner(endpoint)
    try:
        yield provisioner.open()
    finally:
        provisioner.close()
