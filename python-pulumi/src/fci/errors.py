from __future__ import annotations


class FciError(Exception):
    """Base error carrying the resource and attribute that caused it."""

    def __init__(self, message: str, resource: str = "", attribute: str = ""):
        super().__init__(message)
        self.message = message
        self.resource = resource
        self.attribute = attribute

    @property
    def location(self) -> str:
        if self.resource and self.attribute:
            return f"{self.resource}.{self.attribute}"

        return self.resource or self.attribute or "<stack>"

    def __str__(self) -> str:
        return f"{self.location}: {self.message}"


class GraphValidationError(FciError, ValueError):
    """The resource graph is inconsistent and must not be applied."""


class ProviderError(FciError):
    """The cloud provider API rejected or failed a request."""


class DriftError(FciError):
    """Live resources were modified outside of the stack."""

    def __init__(self, message: str, drifts: list | None = None, resource: str = "", attribute: str = ""):
        super().__init__(message, resource=resource, attribute=attribute)
        self.drifts = drifts or []
