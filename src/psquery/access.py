""" File access checks over the bus. The file service asks the
    authorization service whether a session may read a file before serving
    its bytes; the authorization service answers with a yes or no.

    Both sides agree on the event name, :data:`CHECK_FILE_ACCESS`, and on
    the request and reply shapes, :class:`AccessRequest` and
    :class:`AccessDecision`. The service name comes from the
    PSQUERY_AUTH_SERVICE environment variable unless given explicitly.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictBool

from . import config
from .errors import QueryError
from .session import Binding, Bus


logger = logging.getLogger(__name__)

CHECK_FILE_ACCESS = 'check-file-access'

Policy = Callable[[str, str], bool]


class AccessRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias='sessionId', min_length=1)
    file_id: str = Field(alias='fileId', min_length=1)


class AccessDecision(BaseModel):
    allowed: StrictBool


def check_file_access(bus: Bus, session_id: str, file_id: str, service: Optional[str] = None, timeout: Optional[float] = None) -> bool:
    """ Ask the authorization *service* whether *session_id* may read
        *file_id*. Any failure of the query, be it a timeout, a malformed
        reply or a transport problem, is logged and counts as a denial.
    """

    if service is None:
        service = config.settings().auth_service

    request = AccessRequest(session_id=session_id, file_id=file_id)

    try:
        decision = bus.query(service, CHECK_FILE_ACCESS, request.model_dump(by_alias=True), AccessDecision, timeout)
    except QueryError as exc:
        logger.warning('access check for file %s failed: %s', file_id, exc)
        return False

    return decision.allowed


def serve_file_access(bus: Bus, policy: Policy, service: Optional[str] = None) -> Binding:
    """ Answer access checks for *service* with *policy*, a callable taking
        the session id and the file id and returning a truthy value when
        access is allowed. A request that does not match
        :class:`AccessRequest` gets no reply.
    """

    if service is None:
        service = config.settings().auth_service

    def check(data, request_id, date, response_channel):
        request = AccessRequest.model_validate(data)
        allowed = bool(policy(request.session_id, request.file_id))
        logger.debug('session %s %s file %s', request.session_id, 'may read' if allowed else 'may not read', request.file_id)
        return AccessDecision(allowed=allowed).model_dump()

    return bus.listen(service, CHECK_FILE_ACCESS, check)


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
