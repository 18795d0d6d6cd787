"""
oauth2_client.py - client authentication for the token endpoint.
"""

import logging
from typing import Any

from oauth2_errors import InvalidClient, UnauthorizedClient
from oauth2_model import call_model
from oauth2_request import GrantRequest

logger = logging.getLogger("oauth2-client")


async def validate_client(model: Any, grant_request: GrantRequest) -> Any:
    """Authenticate the client and check it may use the requested grant.

    Returns whatever the model's get_client produced.
    """
    client = await call_model(
        model, "get_client", grant_request.client_id, grant_request.client_secret)
    if not client:
        raise InvalidClient("Client credentials are invalid")

    allowed = await call_model(
        model, "grant_type_allowed", grant_request.client_id, grant_request.grant_type)
    if not allowed:
        raise UnauthorizedClient("Grant type is unauthorised for this clientId")

    logger.debug("client %s authenticated for %s",
                 grant_request.client_id, grant_request.grant_type)
    return client
