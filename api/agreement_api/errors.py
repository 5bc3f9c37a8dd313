from typing import Optional


class ServiceError(Exception):
    """Failure talking to an external service (e-signature provider, AI API)."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.code = code


class EsignError(ServiceError):
    pass


class EsignNotConnected(EsignError):
    status_code = 409

    def __init__(self, message: str = "E-signature provider not connected. Please authorize first."):
        super().__init__(message, code="ESIGN_NOT_CONNECTED")


class AnalysisError(ServiceError):
    pass
