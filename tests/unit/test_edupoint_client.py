from __future__ import annotations

import xml.etree.ElementTree as ET
from typing import Any, Dict, List

import httpx
import pytest

from common.edupoint import (
    EduPointClient,
    ProtocolError,
    TransportError,
    build_request,
    decode_structural,
    extract_result_document,
    parse_gradebook,
)


BASE_URL = "https://portal.example.test"


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _operation_fields(envelope: str) -> List[tuple[str, str]]:
    root = ET.fromstring(envelope)
    body = next(c for c in root if _local(c.tag) == "Body")
    operation = body[0]
    return [(_local(c.tag), c.text or "") for c in operation]


def _soap_response(escaped_inner: str, result: str = "ProcessWebServiceRequestResult") -> str:
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        '<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/"'
        ' xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance"'
        ' xmlns:xsd="http://www.w3.org/2001/XMLSchema">'
        "<soap:Body>"
        '<ProcessWebServiceRequestResponse xmlns="http://edupoint.com/webservices/">'
        f"<{result}>{escaped_inner}</{result}>"
        "</ProcessWebServiceRequestResponse>"
        "</soap:Body>"
        "</soap:Envelope>"
    )


# A gradebook as the portal sends it: escaped once as SOAP character data
_GRADEBOOK_ESCAPED = (
    '&lt;?xml version="1.0" encoding="utf-8"?&gt;'
    '&lt;Gradebook xmlns:xsd="http://www.w3.org/2001/XMLSchema" Type="Traditional"&gt;'
    "&lt;Courses&gt;"
    '&lt;Course Period="1" Title="Algebra I" Room="B12" Staff="Ms. Rivera"&gt;'
    "&lt;Marks&gt;"
    '&lt;Mark MarkName="Q1" CalculatedScoreString="A-" CalculatedScoreRaw="91.2" /&gt;'
    '&lt;Mark MarkName="Q2" CalculatedScoreString="B" CalculatedScoreRaw="85.0" /&gt;'
    "&lt;/Marks&gt;"
    "&lt;/Course&gt;"
    '&lt;Course Period="2" Title="Art &amp;amp; Design" Staff="Mr. Chen"&gt;'
    "&lt;Marks /&gt;"
    "&lt;/Course&gt;"
    "&lt;/Courses&gt;"
    "&lt;/Gradebook&gt;"
)


# --------------- build_request ---------------
def test_gradebook_uses_generic_shape_in_order():
    action, envelope = build_request(
        "Gradebook", "parent01", "pw", "<Parms><ChildIntID>42</ChildIntID></Parms>", "1"
    )

    assert action == "http://edupoint.com/webservices/ProcessWebServiceRequest"
    assert '<ProcessWebServiceRequest xmlns="http://edupoint.com/webservices/">' in envelope
    assert [name for name, _ in _operation_fields(envelope)] == [
        "userID",
        "password",
        "skipLoginLog",
        "parent",
        "webServiceHandleName",
        "methodName",
        "paramStr",
    ]
    fields = dict(_operation_fields(envelope))
    assert fields["userID"] == "parent01"
    assert fields["skipLoginLog"] == "1"
    assert fields["parent"] == "1"
    assert fields["webServiceHandleName"] == "PXPWebServices"
    assert fields["methodName"] == "Gradebook"
    assert "<paramStr><Parms><ChildIntID>42</ChildIntID></Parms></paramStr>" in envelope


def test_child_list_uses_multi_web_shape_with_empty_db_name():
    action, envelope = build_request("ChildList", "parent01", "pw")

    assert action == "http://edupoint.com/webservices/ProcessWebServiceRequestMultiWeb"
    assert [name for name, _ in _operation_fields(envelope)] == [
        "userID",
        "password",
        "skipLoginLog",
        "parent",
        "webDBName",
        "webServiceHandleName",
        "methodName",
        "paramStr",
    ]
    assert "<webDBName></webDBName>" in envelope
    assert "<skipLoginLog>0</skipLoginLog>" in envelope


def test_credentials_are_escaped():
    _, envelope = build_request("Gradebook", "a&b", "p<w>\"d", "")

    fields = dict(_operation_fields(envelope))
    assert fields["userID"] == "a&b"
    assert fields["password"] == 'p<w>"d'


# --------------- decode_structural ---------------
def test_decode_structural_keeps_attribute_values_encoded():
    out = decode_structural('&lt;Course Title="A &amp; B" Room="1"&gt;&lt;/Course&gt;')
    assert out == '<Course Title="A &amp; B" Room="1"></Course>'


def test_decode_structural_decodes_exactly_one_level():
    assert decode_structural("&amp;lt;x&amp;gt;") == "&lt;x&gt;"
    assert decode_structural("say &quot;hi&quot; &#39;there&#39;") == "say \"hi\" 'there'"


def test_decode_structural_restores_many_attributes_in_order():
    attrs = " ".join(f'a{i}="v&amp;{i}"' for i in range(12))
    out = decode_structural(f"&lt;Row {attrs} /&gt;")
    assert out == f"<Row {attrs} />"


def test_decode_structural_rejects_nul():
    with pytest.raises(ProtocolError):
        decode_structural("&lt;a\x00&gt;")


# --------------- extract_result_document ---------------
def test_nested_entities_lose_exactly_one_level():
    wire = _soap_response('&lt;Course Title="A &amp;amp; B"&gt;&lt;/Course&gt;')

    doc = extract_result_document(wire)

    assert doc == '<Course Title="A &amp; B"></Course>'


def test_double_escaped_scaffolding_is_decoded():
    wire = _soap_response('&amp;lt;Gradebook Type=&quot;x&quot;&amp;gt;&amp;lt;/Gradebook&amp;gt;')

    assert extract_result_document(wire) == '<Gradebook Type="x"></Gradebook>'


def test_extract_accepts_multi_web_result():
    wire = _soap_response("&lt;ChildList /&gt;", result="ProcessWebServiceRequestMultiWebResult")
    assert extract_result_document(wire) == "<ChildList />"


@pytest.mark.parametrize(
    "wire",
    [
        "<soap:Envelope",
        "<NotSoap />",
        '<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/"><soap:Body>'
        '<Other xmlns="http://edupoint.com/webservices/"><Nope /></Other></soap:Body></soap:Envelope>',
        _soap_response(""),
    ],
)
def test_extract_rejects_bad_envelopes(wire: str):
    with pytest.raises(ProtocolError):
        extract_result_document(wire)


def test_extract_surfaces_soap_fault():
    wire = (
        '<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/"><soap:Body>'
        "<soap:Fault><faultcode>soap:Server</faultcode><faultstring>Server was unable to process request."
        "</faultstring></soap:Fault></soap:Body></soap:Envelope>"
    )
    with pytest.raises(ProtocolError, match="unable to process"):
        extract_result_document(wire)


# --------------- parse_gradebook ---------------
def test_parse_gradebook_reads_courses_with_defaults():
    courses = parse_gradebook(extract_result_document(_soap_response(_GRADEBOOK_ESCAPED)))

    assert len(courses) == 2
    algebra, art = courses
    assert algebra.title == "Algebra I"
    assert algebra.teacher == "Ms. Rivera"
    assert algebra.room == "B12"
    assert algebra.period == "1"
    assert algebra.calculated_score == "A-"  # first mark wins

    # Entity inside the attribute survives to the inner parse intact
    assert art.title == "Art & Design"
    assert art.room == ""
    assert art.calculated_score == ""


def test_parse_gradebook_without_courses_is_empty():
    assert parse_gradebook("<Gradebook />") == []


def test_parse_gradebook_course_without_attributes():
    (course,) = parse_gradebook("<Gradebook><Courses><Course /></Courses></Gradebook>")
    assert course.model_dump() == {"title": "", "teacher": "", "room": "", "period": "", "calculated_score": ""}


def test_parse_gradebook_rt_error_raises_with_message():
    with pytest.raises(ProtocolError, match="Invalid user id or password"):
        parse_gradebook('<RT_ERROR ERROR_MESSAGE="Invalid user id or password"><STACK_TRACE /></RT_ERROR>')


@pytest.mark.parametrize("doc", ["<Gradebook>", "<StudentInfo />", ""])
def test_parse_gradebook_rejects_unexpected_documents(doc: str):
    with pytest.raises(ProtocolError):
        parse_gradebook(doc)


# --------------- EduPointClient ---------------
def test_fetch_grades_posts_gradebook_request():
    seen: Dict[str, Any] = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["count"] += 1
        seen["request"] = request
        return httpx.Response(200, text=_soap_response(_GRADEBOOK_ESCAPED))

    client = httpx.Client(transport=httpx.MockTransport(handler))
    with EduPointClient(base_url=BASE_URL + "/", client=client) as portal:
        courses = portal.fetch_grades("parent01", "pw", "987654")

    assert seen["count"] == 1
    req: httpx.Request = seen["request"]
    assert req.method == "POST"
    assert str(req.url) == f"{BASE_URL}/Service/PXPCommunication.asmx"
    assert req.headers["SOAPAction"] == "http://edupoint.com/webservices/ProcessWebServiceRequest"
    assert req.headers["Content-Type"].startswith("text/xml")
    body = req.content.decode("utf-8")
    assert "<methodName>Gradebook</methodName>" in body
    assert "<skipLoginLog>1</skipLoginLog>" in body
    assert "<paramStr><Parms><ChildIntID>987654</ChildIntID></Parms></paramStr>" in body
    assert [c.title for c in courses] == ["Algebra I", "Art & Design"]


def test_transport_failure_raises_without_retry():
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        raise httpx.ConnectError("connection refused", request=request)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    with EduPointClient(base_url=BASE_URL, client=client) as portal:
        with pytest.raises(TransportError):
            portal.fetch_grades("parent01", "pw", "1")

    assert calls["n"] == 1


def test_http_error_status_raises_transport_error():
    calls = {"n": 0}

    def handler(_: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(503, text="Service Unavailable")

    client = httpx.Client(transport=httpx.MockTransport(handler))
    with EduPointClient(base_url=BASE_URL, client=client) as portal:
        with pytest.raises(TransportError, match="HTTP 503"):
            portal.request("Gradebook", "parent01", "pw")

    assert calls["n"] == 1


def test_any_2xx_status_is_accepted():
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(202, text=_soap_response(_GRADEBOOK_ESCAPED))

    client = httpx.Client(transport=httpx.MockTransport(handler))
    with EduPointClient(base_url=BASE_URL, client=client) as portal:
        courses = portal.fetch_grades("parent01", "pw", "1")

    assert [c.title for c in courses] == ["Algebra I", "Art & Design"]


def test_portal_error_document_raises_protocol_error():
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, text=_soap_response('&lt;RT_ERROR ERROR_MESSAGE="Invalid user id or password" /&gt;')
        )

    client = httpx.Client(transport=httpx.MockTransport(handler))
    with EduPointClient(base_url=BASE_URL, client=client) as portal:
        with pytest.raises(ProtocolError):
            portal.fetch_grades("parent01", "bad", "1")
