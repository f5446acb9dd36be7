from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET
from typing import Dict, List, Optional, Tuple
from xml.sax.saxutils import escape

import httpx

from state.models import CourseRecord


logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://ca-pleas-psv.edupoint.com"
SERVICE_PATH = "/Service/PXPCommunication.asmx"
WEBSERVICES_NS = "http://edupoint.com/webservices/"
SERVICE_HANDLE = "PXPWebServices"

# Headers the ParentVUE iOS app sends; the portal is picky about clients
DEFAULT_HEADERS = {
    "Accept": "*/*",
    "Content-Type": "text/xml; charset=utf-8",
    "Accept-Language": "en-US,en;q=0.9",
    "Accept-Encoding": "gzip, deflate",
    "User-Agent": "ParentVUE/12.2.15 CFNetwork/1410.1 Darwin/22.6.0",
}

# Methods served by the multi-web operation; everything else is generic
MULTI_WEB_METHODS = frozenset({"ChildList"})

_ENVELOPE_TEMPLATE = """<?xml version="1.0" encoding="utf-8"?>
<soap:Envelope xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance" xmlns:xsd="http://www.w3.org/2001/XMLSchema" xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/">
    <soap:Body>
        <{operation} xmlns="{ns}">
{fields}
        </{operation}>
    </soap:Body>
</soap:Envelope>"""

_RESULT_ELEMENTS = ("ProcessWebServiceRequestResult", "ProcessWebServiceRequestMultiWebResult")


class EduPointError(RuntimeError):
    """Base error for the EduPoint PXP client."""


class ProtocolError(EduPointError):
    """Response XML was malformed, or expected elements were absent."""


class TransportError(EduPointError):
    """The remote call failed at the network or HTTP layer."""


# --------------- Request building ---------------
def build_request(
    method_name: str,
    user_id: str,
    password: str,
    param_str: str = "",
    skip_login_log: str = "0",
) -> Tuple[str, str]:
    """
    Build the SOAP envelope for a PXP web-service method.

    Returns `(soap_action, envelope)`. `ChildList` uses the multi-web shape
    (which carries an empty `webDBName`); every other method, including
    `Gradebook`, uses the generic shape. `param_str` is inserted as-is since it
    is itself markup (e.g. `<Parms>...</Parms>`).
    """
    multi = method_name in MULTI_WEB_METHODS
    operation = "ProcessWebServiceRequestMultiWeb" if multi else "ProcessWebServiceRequest"

    fields: List[Tuple[str, str]] = [
        ("userID", escape(user_id)),
        ("password", escape(password)),
        ("skipLoginLog", escape(skip_login_log)),
        ("parent", "1"),
    ]
    if multi:
        fields.append(("webDBName", ""))
    fields += [
        ("webServiceHandleName", SERVICE_HANDLE),
        ("methodName", escape(method_name)),
        ("paramStr", param_str),
    ]

    body = "\n".join(f"            <{name}>{value}</{name}>" for name, value in fields)
    envelope = _ENVELOPE_TEMPLATE.format(operation=operation, ns=WEBSERVICES_NS, fields=body)
    return f"{WEBSERVICES_NS}{operation}", envelope


# --------------- Response decoding ---------------
_ATTR_VALUE_RE = re.compile(r'="([^"]*)"')
_STRUCTURAL_ENTITY_RE = re.compile(r"&(lt|gt|amp|quot|#39);")
_STRUCTURAL_ENTITIES = {"lt": "<", "gt": ">", "amp": "&", "quot": '"', "#39": "'"}
# NUL cannot occur in XML text, so it cannot collide with payload content
_PLACEHOLDER_RE = re.compile("\x00(\\d+)\x00")


def decode_structural(text: str) -> str:
    """
    Decode the XML scaffolding of an entity-encoded document while leaving
    quoted attribute values exactly as received.

    1. Every `="..."` span is captured in order and swapped for a placeholder.
    2. `&lt; &gt; &amp; &quot; &#39;` are decoded once in the remaining text.
    3. Placeholders are swapped back for the original span contents.

    A plain unescape would also decode entities inside values such as a course
    title `A &amp; B`, which the inner parser must still see encoded.
    """
    if "\x00" in text:
        raise ProtocolError("Result payload contains a NUL character")

    spans: List[str] = []

    def _protect(m: re.Match[str]) -> str:
        spans.append(m.group(1))
        return f'="\x00{len(spans) - 1}\x00"'

    protected = _ATTR_VALUE_RE.sub(_protect, text)
    decoded = _STRUCTURAL_ENTITY_RE.sub(lambda m: _STRUCTURAL_ENTITIES[m.group(1)], protected)
    return _PLACEHOLDER_RE.sub(lambda m: spans[int(m.group(1))], decoded)


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _find_local(parent: ET.Element, name: str) -> Optional[ET.Element]:
    for child in parent:
        if _local_name(child.tag) == name:
            return child
    return None


def extract_result_document(outer_xml: str | bytes) -> str:
    """
    Pull the inner document out of a SOAP response.

    The result element's text is the inner XML escaped as character data.
    Parsing the envelope undoes one level of escaping; `decode_structural`
    then handles any scaffolding that was escaped twice.
    """
    try:
        root = ET.fromstring(outer_xml)
    except ET.ParseError as ex:
        raise ProtocolError(f"Malformed SOAP envelope: {ex}") from ex

    if _local_name(root.tag) != "Envelope":
        raise ProtocolError(f"Unexpected SOAP root <{_local_name(root.tag)}>")
    body = _find_local(root, "Body")
    if body is None:
        raise ProtocolError("SOAP envelope has no Body")

    fault = _find_local(body, "Fault")
    if fault is not None:
        reason = _find_local(fault, "faultstring")
        raise ProtocolError(f"SOAP fault: {(reason.text if reason is not None else None) or 'unknown'}")

    for response in body:
        for result in response:
            if _local_name(result.tag) in _RESULT_ELEMENTS:
                text = result.text or ""
                if not text.strip():
                    raise ProtocolError("SOAP result element is empty")
                return decode_structural(text)
    raise ProtocolError("SOAP response has no result element")


def parse_gradebook(inner_xml: str) -> List[CourseRecord]:
    """
    Map a decoded `<Gradebook>` document to course records.

    Each `Courses/Course` contributes Title/Staff/Room/Period and the
    `CalculatedScoreString` of its first `Marks/Mark`. Missing attributes become
    empty strings, so a course with no marks still appears with an empty score.
    """
    try:
        root = ET.fromstring(inner_xml)
    except ET.ParseError as ex:
        raise ProtocolError(f"Malformed gradebook document: {ex}") from ex

    name = _local_name(root.tag)
    if name == "RT_ERROR":
        # Sent for bad credentials, unknown child id, etc.
        raise ProtocolError(f"Portal error: {root.get('ERROR_MESSAGE') or 'unknown error'}")
    if name != "Gradebook":
        raise ProtocolError(f"Unexpected gradebook root <{name}>")

    courses = root.find("Courses")
    if courses is None:
        return []

    out: List[CourseRecord] = []
    for course in courses.findall("Course"):
        mark = course.find("Marks/Mark")
        out.append(
            CourseRecord(
                title=course.get("Title", ""),
                teacher=course.get("Staff", ""),
                room=course.get("Room", ""),
                period=course.get("Period", ""),
                calculated_score=mark.get("CalculatedScoreString", "") if mark is not None else "",
            )
        )
    return out


class EduPointClient:
    """
    Minimal client for the EduPoint ParentVUE PXP SOAP service.

    Notes
    - One POST per call; failures are not retried. The caller decides when to
      come back (the next scheduled tick).
    - Calls are expected to be made one at a time so a batch never bursts the
      portal's rate limiting.
    """

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        self._url = f"{base_url.rstrip('/')}{SERVICE_PATH}"
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "EduPointClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --------------- Public API ---------------
    def request(
        self,
        method_name: str,
        user_id: str,
        password: str,
        param_str: str = "",
        skip_login_log: str = "0",
    ) -> bytes:
        """Invoke a PXP method and return the raw SOAP response body."""
        action, envelope = build_request(method_name, user_id, password, param_str, skip_login_log)
        headers: Dict[str, str] = {**DEFAULT_HEADERS, "SOAPAction": action}

        logger.debug("POST %s method=%s", self._url, method_name)
        try:
            resp = self._client.post(self._url, content=envelope.encode("utf-8"), headers=headers)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise TransportError(f"SOAP request failed: {exc}") from exc

        if not resp.is_success:
            raise TransportError(f"HTTP {resp.status_code} from EduPoint: {resp.text[:200]}")
        return resp.content

    def fetch_grades(self, user_id: str, password: str, child_int_id: str) -> List[CourseRecord]:
        """Fetch the current gradebook for one child of the account."""
        param_str = f"<Parms><ChildIntID>{escape(str(child_int_id))}</ChildIntID></Parms>"
        body = self.request("Gradebook", user_id, password, param_str, skip_login_log="1")
        return parse_gradebook(extract_result_document(body))


__all__ = [
    "EduPointClient",
    "EduPointError",
    "ProtocolError",
    "TransportError",
    "build_request",
    "decode_structural",
    "extract_result_document",
    "parse_gradebook",
]
