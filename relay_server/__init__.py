"""
Browser Radio Relay Server

FastAPI application exposing the relay channel over WebSocket, health and
session status endpoints, Prometheus metrics, a status-page proxy to the
ingest server, and the browser app shell.
"""

from relay_server.app import create_app, main

__all__ = ["create_app", "main"]
