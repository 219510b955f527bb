"""
Messaging provider interface.

The only outbound message the service sends is the consent prompt asking the
customer to allow voice calls on the channel.
"""

from abc import ABC, abstractmethod

from callbridge.shared.exceptions import CollaboratorError


class SendError(CollaboratorError):
    """Error while sending a message."""


class MessagingProvider(ABC):
    """Abstract interface for messaging providers."""

    @abstractmethod
    async def send_consent_prompt(self, destination: str, template_ref: str) -> str:
        """Send the call-permission template to ``destination``.

        Returns:
            Provider message id.

        Raises:
            SendError: The provider refused or could not be reached.
        """
        ...

    async def close(self) -> None:
        return None
