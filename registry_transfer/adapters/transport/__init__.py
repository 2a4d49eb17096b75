"""Transport adapters for the clinical-data-exchange endpoint."""

from registry_transfer.adapters.transport.httpx_transport import HttpxTransportClient

__all__ = ["HttpxTransportClient"]
