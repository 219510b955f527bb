"""
FastAPI dependencies resolving the services built at startup.

Everything lives on ``app.state`` (see ``callbridge.main.lifespan``) so tests
can swap any collaborator before the first request.
"""

from fastapi import Request

from callbridge.calls.lifecycle import CallLifecycleManager
from callbridge.correlation.correlator import EventCorrelator
from callbridge.notifications.fanout import NotificationFanout
from callbridge.permissions.ledger import PermissionLedger
from callbridge.telephony.config import TelephonyConfig
from callbridge.telephony.interface import TelephonyProvider


def get_lifecycle(request: Request) -> CallLifecycleManager:
    return request.app.state.lifecycle


def get_ledger(request: Request) -> PermissionLedger:
    return request.app.state.ledger


def get_correlator(request: Request) -> EventCorrelator:
    return request.app.state.correlator


def get_fanout(request: Request) -> NotificationFanout:
    return request.app.state.fanout


def get_telephony(request: Request) -> TelephonyProvider:
    return request.app.state.telephony


def get_telephony_cfg(request: Request) -> TelephonyConfig:
    return request.app.state.telephony_config
