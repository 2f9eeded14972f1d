"""Trigger gateway: push notification webhook and background run dispatch."""

from push_deployer.gateway.app import create_app
from push_deployer.gateway.dispatcher import Dispatcher

__all__ = ["create_app", "Dispatcher"]
