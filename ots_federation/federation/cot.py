"""
CoT helpers for federation sessions: the ping sent as a heartbeat, the streaming auth message, and the mapping from a
CoT type to the federation data type it is routed as.
"""

from datetime import datetime, timedelta, timezone
from xml.etree.ElementTree import Element, SubElement, tostring

from ots_federation.functions import iso8601_string_from_datetime
from ots_federation.models.Federation import Federation

# Checked in order, first prefix match wins
DATA_TYPE_PREFIXES = (
    ("b-t-f", Federation.DATA_TYPE_CHAT),          # GeoChat
    ("b-i-v", Federation.DATA_TYPE_VIDEO),         # Video stream announcement
    ("b-f-t-r", Federation.DATA_TYPE_DATAPACKAGES),  # File transfer request
    ("t-x-m", Federation.DATA_TYPE_MISSIONS),      # Mission change/notification
)


def data_type_for_cot_type(cot_type: str) -> str:
    for prefix, data_type in DATA_TYPE_PREFIXES:
        if cot_type and cot_type.startswith(prefix):
            return data_type
    return Federation.DATA_TYPE_COT


def create_ping_cot(node_id: str, interval: float, version: str) -> bytes:
    """
    TAK ping (t-x-c-t) used as the federation heartbeat.

    Peers answer with a pong, which keeps the receive side of the session alive.
    """
    now = datetime.now(timezone.utc)
    stale_time = now + timedelta(seconds=interval * 2)

    event = Element('event', {'version': '2.0', 'uid': f"{node_id}-ping", 'type': 't-x-c-t',
                              'time': iso8601_string_from_datetime(now),
                              'start': iso8601_string_from_datetime(now),
                              'stale': iso8601_string_from_datetime(stale_time),
                              'how': 'h-g-i-g-o'})
    SubElement(event, 'point', {'lat': '0.0', 'lon': '0.0', 'hae': '0.0', 'ce': '9999999.0', 'le': '9999999.0'})

    detail = SubElement(event, 'detail')
    SubElement(detail, 'contact', {'callsign': f"OTS-{node_id}"})
    SubElement(detail, 'takv', {'platform': 'OpenTAKServer', 'version': version, 'device': 'federation-server',
                                'os': 'Linux'})

    return tostring(event, encoding='utf-8')


def create_auth_message(username: str, password: str, uid: str) -> bytes:
    """Streaming-port authentication sent right after the session is established"""
    auth = Element('auth')
    SubElement(auth, 'cot', {'username': username, 'password': password or '', 'uid': uid})
    return tostring(auth, encoding='utf-8')
