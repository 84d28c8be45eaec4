"""
Error taxonomy shared by the message bus and the registration lifecycle.

- ``TransportError``: broker unreachable or channel closed.  Surfaced to the
  publisher; the bus never retries on its own.
- ``SerializationError``: a payload that cannot be encoded or decoded.
  Permanent for the message concerned, so it is never requeued.
- ``HandlerError``: business failure inside a subscriber.  Contained in the
  delivery loop and turned into a negative acknowledgement with requeue.
- ``RegistrationError``: the discovery registry could not be reached or
  refused the request.  Surfaced to the caller of ``start`` / ``stop``.
"""


class MessagingError(Exception):
    """Base class for message bus failures."""


class TransportError(MessagingError):
    pass


class SerializationError(MessagingError):
    pass


class HandlerError(MessagingError):
    pass


class RegistrationError(Exception):
    pass
