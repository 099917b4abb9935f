from __future__ import annotations

from fastapi import Request

from chat_gateway.alerts.service import AlertService
from chat_gateway.connections.registry import ConnectionRegistry
from chat_gateway.core.container import GatewayContainer
from chat_gateway.delivery.queue import DeliveryQueue
from chat_gateway.delivery.worker import DeliveryWorker
from chat_gateway.health.monitor import HealthMonitor


def get_container(request: Request) -> GatewayContainer:
    return request.app.state.container


def get_registry(request: Request) -> ConnectionRegistry:
    return get_container(request).registry


def get_queue(request: Request) -> DeliveryQueue:
    return get_container(request).queue


def get_worker(request: Request) -> DeliveryWorker:
    return get_container(request).worker


def get_monitor(request: Request) -> HealthMonitor:
    return get_container(request).monitor


def get_alert_service(request: Request) -> AlertService:
    return get_container(request).alerts
