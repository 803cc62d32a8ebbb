"""profilecast — profile records with live change notifications.

A small reactive service: CRUD over profile records, and a fan-out bus
that pushes every committed change to connected WebSocket sessions.
"""

__version__ = "0.1.0"
