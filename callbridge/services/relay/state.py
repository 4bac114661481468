"""
Relay lifecycle

Every event that can affect a relay goes through transition(); anything
not listed in TRANSITIONS is an illegal event for that state and is
rejected with InvalidTransitionError instead of being silently ignored.
"""

from enum import Enum
from typing import Dict, Tuple

from callbridge.core.exceptions import InvalidTransitionError


class RelayState(str, Enum):
    AWAITING_STREAM_START = "awaiting_stream_start"
    AWAITING_VENDOR_READY = "awaiting_vendor_ready"
    BRIDGED = "bridged"
    CLOSING = "closing"
    CLOSED = "closed"


class RelayEvent(str, Enum):
    STREAM_START = "stream_start"
    CARRIER_MEDIA = "carrier_media"
    VENDOR_READY = "vendor_ready"
    VENDOR_FAILED = "vendor_failed"
    VENDOR_MESSAGE = "vendor_message"
    STOP = "stop"
    CARRIER_CLOSED = "carrier_closed"
    VENDOR_CLOSED = "vendor_closed"
    TEARDOWN_COMPLETE = "teardown_complete"


S = RelayState
E = RelayEvent

TRANSITIONS: Dict[Tuple[RelayState, RelayEvent], RelayState] = {
    (S.AWAITING_STREAM_START, E.STREAM_START): S.AWAITING_VENDOR_READY,
    (S.AWAITING_STREAM_START, E.STOP): S.CLOSING,
    (S.AWAITING_STREAM_START, E.CARRIER_CLOSED): S.CLOSING,

    (S.AWAITING_VENDOR_READY, E.CARRIER_MEDIA): S.AWAITING_VENDOR_READY,
    (S.AWAITING_VENDOR_READY, E.VENDOR_READY): S.BRIDGED,
    # No AI on this call; carrier audio keeps flowing and is discarded
    (S.AWAITING_VENDOR_READY, E.VENDOR_FAILED): S.BRIDGED,
    (S.AWAITING_VENDOR_READY, E.STOP): S.CLOSING,
    (S.AWAITING_VENDOR_READY, E.CARRIER_CLOSED): S.CLOSING,
    (S.AWAITING_VENDOR_READY, E.VENDOR_CLOSED): S.CLOSING,

    (S.BRIDGED, E.CARRIER_MEDIA): S.BRIDGED,
    (S.BRIDGED, E.VENDOR_MESSAGE): S.BRIDGED,
    (S.BRIDGED, E.STOP): S.CLOSING,
    (S.BRIDGED, E.CARRIER_CLOSED): S.CLOSING,
    (S.BRIDGED, E.VENDOR_CLOSED): S.CLOSING,

    (S.CLOSING, E.STOP): S.CLOSING,
    (S.CLOSING, E.CARRIER_CLOSED): S.CLOSING,
    (S.CLOSING, E.VENDOR_CLOSED): S.CLOSING,
    (S.CLOSING, E.TEARDOWN_COMPLETE): S.CLOSED,
}


def transition(state: RelayState, event: RelayEvent) -> RelayState:
    """Next state for an event, or InvalidTransitionError"""
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransitionError(state.value, event.value) from None
