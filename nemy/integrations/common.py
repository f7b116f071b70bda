from __future__ import annotations


class IntegrationUnavailableError(RuntimeError):
    """An outbound integration cannot be built from the current config.

    The outbox treats this as "hold the messages", never as a delivery failure.
    """

    state = "unavailable"

    def __init__(self, integration: str, detail: str = ""):
        self.integration = integration
        self.detail = detail
        super().__init__(f"INTEGRATION_{self.state.upper()}:{integration}" + (f" {detail}" if detail else ""))


class IntegrationDisabledError(IntegrationUnavailableError):
    state = "disabled"


class IntegrationMisconfiguredError(IntegrationUnavailableError):
    state = "misconfigured"
