"""
Campaign engine exceptions.

Raised by the service layer and translated to HTTP responses in the API layer.
"""
from typing import Optional


class CampaignError(Exception):
    """Base exception for campaign engine errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


class CampaignNotFound(CampaignError):
    """Campaign does not exist for this tenant."""

    def __init__(self, campaign_id: str):
        super().__init__("Campaign not found", {"campaign_id": campaign_id})


class CampaignValidationError(CampaignError):
    """Campaign definition is incomplete or inconsistent."""
    pass


class InvalidTransition(CampaignError):
    """Requested status change is not allowed from the current status."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot move campaign from '{current}' to '{target}'",
            {"current": current, "target": target}
        )


class EmptyAudienceError(CampaignError):
    """Audience resolved to zero opted-in customers."""
    pass
