"""Authentication header injection for gRPC calls."""
from typing import Any, Mapping
import structlog
import grpc

log = structlog.get_logger()


class AuthMetadataInterceptor(
    grpc.aio.UnaryUnaryClientInterceptor,
    grpc.aio.UnaryStreamClientInterceptor,
):
    """
    Attach authentication headers to every outgoing call.

    Installed on the channel so the subscriber never builds call metadata
    itself. Headers are static; obtaining or refreshing the credentials is
    left to whoever builds the interceptor.
    """

    def __init__(self, headers: Mapping[str, str]):
        """
        Initialize interceptor.

        Args:
            headers: Header name -> value (e.g. accesstoken, instanceurl, tenantid)
        """
        self._headers = {key.lower(): value for key, value in headers.items()}

    def _with_headers(self, client_call_details: grpc.aio.ClientCallDetails) -> grpc.aio.ClientCallDetails:
        metadata = grpc.aio.Metadata()
        for key, value in client_call_details.metadata or ():
            if key not in self._headers:
                metadata.add(key, value)
        for key, value in self._headers.items():
            metadata.add(key, value)

        log.debug("auth.headers_attached", method=client_call_details.method)
        return grpc.aio.ClientCallDetails(
            method=client_call_details.method,
            timeout=client_call_details.timeout,
            metadata=metadata,
            credentials=client_call_details.credentials,
            wait_for_ready=client_call_details.wait_for_ready,
        )

    async def intercept_unary_unary(self, continuation, client_call_details, request) -> Any:
        return await continuation(self._with_headers(client_call_details), request)

    async def intercept_unary_stream(self, continuation, client_call_details, request) -> Any:
        return await continuation(self._with_headers(client_call_details), request)
