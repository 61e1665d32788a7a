"""
Notifier capability: push a short message to an operator channel.
"""

import logging
from abc import ABC, abstractmethod

from acme_cert_orchestrator.exceptions import OrchestratorError, VendorAPIError

logger = logging.getLogger(__name__)


class Notifier(ABC):
    """A message channel bound to one credential set."""

    provider_name: str = "notifier"

    @abstractmethod
    def send(self, subject: str, body: str) -> None:
        """Deliver a message. Raises on delivery failure."""


def notify(notifier: Notifier, subject: str, body: str, log: logging.Logger | None = None) -> None:
    """
    Send a message through a notifier.

    Raises:
        VendorAPIError: If the notifier fails.
    """
    log = log or logger
    try:
        notifier.send(subject, body)
    except OrchestratorError:
        raise
    except Exception as e:
        raise VendorAPIError(f"{notifier.provider_name}.send", e) from e

    log.info(f"Notification sent via {notifier.provider_name}: {subject}")
