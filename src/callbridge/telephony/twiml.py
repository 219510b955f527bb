"""
Minimal TwiML rendering.

Only the verbs the bridge needs: ``<Dial><Conference>`` and ``<Say>``.
"""

from callbridge.telephony.interface import BridgeRequest, BridgeRole


def _twiml(s: str) -> str:
    return '<?xml version="1.0" encoding="UTF-8"?>\n<Response>\n' + s + "\n</Response>"


def _xml_escape(text: str) -> str:
    return (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&apos;")
    )


def say(message: str) -> str:
    return _twiml(f"  <Say>{_xml_escape(message)}</Say>")


def conference_bridge(request: BridgeRequest, hold_music_url: str, record: bool) -> str:
    """Put the leg into the named conference.

    An inbound customer starts the conference on entry and waits on hold music
    for the agent; an outbound customer waits for the agent to start it.
    Either customer leaving ends the bridge.
    """
    start_on_enter = "true" if request.role == BridgeRole.INBOUND_CUSTOMER else "false"
    attrs = [
        f'startConferenceOnEnter="{start_on_enter}"',
        'endConferenceOnExit="true"',
        f'statusCallback="{_xml_escape(request.status_callback_url)}"',
        'statusCallbackEvent="start end join leave"',
        'statusCallbackMethod="POST"',
    ]
    if request.role == BridgeRole.INBOUND_CUSTOMER and hold_music_url:
        attrs.append(f'waitUrl="{_xml_escape(hold_music_url)}"')
    if record and request.recording_callback_url:
        attrs.append('record="record-from-start"')
        attrs.append(f'recordingStatusCallback="{_xml_escape(request.recording_callback_url)}"')

    return _twiml(
        "  <Dial>\n"
        f"    <Conference {' '.join(attrs)}>{_xml_escape(request.conference_name)}</Conference>\n"
        "  </Dial>"
    )


def empty() -> str:
    return _twiml("")
