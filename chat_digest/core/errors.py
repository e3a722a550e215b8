# chat_digest/core/errors.py

"""Error kinds raised by the digest pipeline.

Failures inside one chat's fire are contained by the schedule registry;
these types let callers tell a bad configuration from an unreachable
backend, a failed send or a broken store.
"""


class DigestError(Exception):
    """Base class for digest pipeline errors"""


class InvalidScheduleError(DigestError):
    """report_time is not HH:MM or timezone is not a known IANA zone"""


class GenerationUnavailable(DigestError):
    """The generative text backend is unreachable or returned garbage"""


class DeliveryFailed(DigestError):
    """Sending a message to the chat failed"""


class StoreUnavailable(DigestError):
    """The message store could not be read or written"""


class ChatNotFound(DigestError):
    """No chat is stored under the given identifier"""

    def __init__(self, chat_id: str):
        super().__init__(f"Chat {chat_id} not found")
        self.chat_id = chat_id
