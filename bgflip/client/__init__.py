"""
Python client for the images API: request wrapper plus the status polling
loop used to follow a job until it completes or fails.
"""

from bgflip.client.api import ApiClientError, ImagesApiClient
from bgflip.client.poller import PollingError, StatusPoller, TERMINAL_STATUSES

__all__ = [
    "ApiClientError",
    "ImagesApiClient",
    "PollingError",
    "StatusPoller",
    "TERMINAL_STATUSES",
]
