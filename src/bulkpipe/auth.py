"""
Session login against the partner SOAP endpoint.
"""

from __future__ import annotations

import typing as t
import xml.etree.ElementTree as ET
from xml.sax.saxutils import escape

import httpx
import structlog

from bulkpipe.exceptions import AuthError
from bulkpipe.models import JobOptions, SessionInfo

log = structlog.get_logger(__name__)

LOGIN_ENVELOPE = """<?xml version="1.0" encoding="utf-8" ?>
<env:Envelope xmlns:xsd="http://www.w3.org/2001/XMLSchema"
    xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance"
    xmlns:env="http://schemas.xmlsoap.org/soap/envelope/">
  <env:Body>
    <n1:login xmlns:n1="urn:partner.soap.sforce.com">
      <n1:username>{username}</n1:username>
      <n1:password>{password}</n1:password>
    </n1:login>
  </env:Body>
</env:Envelope>"""

_BOOLEAN_FIELDS = frozenset({"sandbox", "passwordExpired"})


def build_login_url(*, options: JobOptions) -> str:
    return f"{options.login_url}/services/Soap/u/{options.api_version}"


def build_login_envelope(*, options: JobOptions) -> str:
    """
    Render the SOAP login request body.

    The security token is appended to the password, as the partner API
    expects.
    """
    return LOGIN_ENVELOPE.format(
        username=escape(options.username),
        password=escape(options.password + options.token),
    )


def _local_name(*, tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _find_child(*, element: ET.Element, name: str) -> ET.Element | None:
    for child in element:
        if _local_name(tag=child.tag) == name:
            return child
    return None


def parse_login_response(*, body: str | bytes) -> SessionInfo:
    """
    Extract session details from a SOAP login response.

    Parameters
    ----------
    body : str | bytes
        Raw SOAP envelope returned by the login endpoint.

    Returns
    -------
    SessionInfo
        Parsed session.

    Raises
    ------
    AuthError
        If the envelope cannot be parsed, carries a SOAP fault, or lacks a
        session id.
    """
    try:
        root = ET.fromstring(body)
    except ET.ParseError as error:
        raise AuthError(f"unparsable login response: {error}") from error

    soap_body = _find_child(element=root, name="Body")
    if soap_body is None:
        raise AuthError("login response has no SOAP body")

    fault = _find_child(element=soap_body, name="Fault")
    if fault is not None:
        fault_string = _find_child(element=fault, name="faultstring")
        message = fault_string.text if fault_string is not None else "unknown fault"
        raise AuthError(f"login rejected: {message}")

    response = _find_child(element=soap_body, name="loginResponse")
    result = _find_child(element=response, name="result") if response is not None else None
    if result is None:
        raise AuthError("login response has no result element")

    fields: dict[str, t.Any] = {}
    for child in result:
        name = _local_name(tag=child.tag)
        if len(child):
            # Nested structures such as userInfo are not needed by the client.
            continue
        text = (child.text or "").strip()
        fields[name] = text.lower() == "true" if name in _BOOLEAN_FIELDS else text

    if not fields.get("sessionId") or not fields.get("serverUrl"):
        raise AuthError("login response is missing sessionId or serverUrl")
    return SessionInfo.model_validate(fields)


async def login(
    *,
    options: JobOptions,
    client_factory: t.Callable[[], httpx.AsyncClient],
) -> SessionInfo:
    """
    Exchange credentials for a session.

    Parameters
    ----------
    options : JobOptions
        Connection options carrying the credentials.
    client_factory : typing.Callable[[], httpx.AsyncClient]
        Async client factory used for the request.

    Returns
    -------
    SessionInfo
        Session returned by the remote API.
    """
    url = build_login_url(options=options)
    log.debug(event="Logging in", url=url, username=options.username)
    async with client_factory() as client:
        response = await client.post(
            url=url,
            headers={
                "Content-Type": "text/xml; charset=UTF-8",
                "SOAPAction": "login",
            },
            content=build_login_envelope(options=options).encode(encoding="utf-8"),
        )
    session = parse_login_response(body=response.content)
    log.info(
        event="Logged in",
        server_url=session.server_url,
        user_id=session.user_id,
        sandbox=session.sandbox,
    )
    return session
