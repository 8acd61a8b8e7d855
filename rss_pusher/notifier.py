"""
Protocol definition for the outbound messaging transport.

Defines the interface the poller and the delivery dispatcher use to
reach users.
"""

from typing import Protocol, runtime_checkable


@runtime_checkable
class MessageTransport(Protocol):
    """
    Protocol defining the interface for messaging backends.

    The @runtime_checkable decorator allows using isinstance() checks
    against this protocol for structural typing validation.
    """

    async def test_connection(self) -> bool:
        """
        Test the connection to the messaging backend.

        Returns
        -------
        bool
            True if the connection is working and messages can be sent.
        """
        ...

    async def send_text(
        self,
        chat_id: int,
        text: str,
        message_id: int | None = None,
        html: bool = True,
        disable_preview: bool = False,
    ) -> bool:
        """
        Send a text message, or edit ``message_id`` if given.

        Returns
        -------
        bool
            True if the message was delivered.
        """
        ...

    async def send_photo(self, chat_id: int, photo_url: str, caption: str) -> bool:
        """
        Send a photo with an HTML caption.

        Returns
        -------
        bool
            True if the photo, or its text fallback, was delivered.
        """
        ...

    async def close(self) -> None:
        """Close the transport and release any resources."""
        ...
