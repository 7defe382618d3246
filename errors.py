from typing import Optional


class OrchestratorError(Exception):
    """Base error carrying the HTTP status the API should answer with."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_payload(self) -> dict:
        return {"ok": False, "error": self.message}


class InvalidRequestError(OrchestratorError):
    status_code = 400


class ConfigError(OrchestratorError):
    """A required credential or account identifier is not configured."""

    status_code = 500


class UpstreamError(OrchestratorError):
    """Non-2xx answer from the model, GitHub or Cloudflare APIs."""

    status_code = 502

    def __init__(self, message: str, upstream_status: Optional[int] = None, upstream_body: str = '',
                 endpoint: Optional[str] = None):
        super().__init__(message)
        self.upstream_status = upstream_status
        self.endpoint = endpoint
        self.upstream_body = (upstream_body or '')[:500]

    def to_payload(self) -> dict:
        payload = super().to_payload()
        if self.upstream_status is not None:
            payload["status"] = self.upstream_status
        return payload


class MalformedOutputError(OrchestratorError):
    """The model answered but its output could not be turned into a bundle."""

    status_code = 502
