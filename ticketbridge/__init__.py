"""Reliable event bridge between a ticketing backend and chat threads.

Inbound ticket events are queued in an :mod:`ticketbridge.store`, pulled by the
:mod:`ticketbridge.dispatcher`, and delivered to the ticket's chat thread by the
handlers in :mod:`ticketbridge.handlers`.
"""

__version__ = "0.1.0"
