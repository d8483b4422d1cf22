"""Startup and lifecycle orchestration for the ingress controller daemon."""

DAEMON_NAME = "ingress controller daemon"
DAEMON_VERSION = "0.1.0"
