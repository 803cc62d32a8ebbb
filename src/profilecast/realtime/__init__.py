"""Real-time infrastructure — notification bus + WebSocket.

Learn: Change events flow through two stages:
1. Store change cursor → NotificationBus (one fan-out task)
2. NotificationBus → per-session Subscription → WebSocket text frames

This decouples the change feed (one upstream) from consumers (any number
of WebSocket clients, each with its own bounded queue).
"""
