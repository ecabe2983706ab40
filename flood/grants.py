"""
Authz grant filter: decides which granters the agent may rebalance for.

A granter is eligible when it has actively granted the agent every
permission in the required set. Expired, empty, undecodable and
non-generic grants are skipped one by one; they never fail the filter.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Mapping, Optional, Union

from flood.config import GENERIC_AUTHORIZATION_TYPE_URL
from flood.errors import AuthorizationDecodeError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Grant:
    granter: str
    grantee: str
    type_url: str
    payload: Optional[Mapping]
    expiration: Optional[datetime] = None

    def is_active(self, now: datetime) -> bool:
        return self.expiration is None or self.expiration > now


@dataclass(frozen=True)
class GenericAuthorization:
    msg: str


@dataclass(frozen=True)
class UnrecognizedAuthorization:
    type_url: str


Authorization = Union[GenericAuthorization, UnrecognizedAuthorization]


def decode_authorization(type_url: str, payload: Mapping) -> Authorization:
    """Interpret an authorization payload by its type tag.

    Unknown tags come back as UnrecognizedAuthorization. Only a known tag
    with a malformed payload raises AuthorizationDecodeError.
    """
    if type_url != GENERIC_AUTHORIZATION_TYPE_URL:
        return UnrecognizedAuthorization(type_url)

    msg = payload.get("msg") if isinstance(payload, Mapping) else None
    if not isinstance(msg, str) or not msg:
        raise AuthorizationDecodeError(f"generic authorization without msg: {payload!r}")
    return GenericAuthorization(msg)


def build_authorization_index(
    grants: Iterable[Grant], now: Optional[datetime] = None
) -> dict[str, set[str]]:
    """Map each granter to the permissions it has actively granted."""
    now = now or datetime.now(timezone.utc)
    index: dict[str, set[str]] = defaultdict(set)

    for grant in grants:
        if not grant.is_active(now):
            logger.warning(
                "Grant is expired: granter=%s grantee=%s expiration=%s",
                grant.granter,
                grant.grantee,
                grant.expiration.isoformat(),
            )
            continue

        if not grant.payload:
            logger.warning(
                "Authorization data is missing or empty: granter=%s", grant.granter
            )
            continue

        try:
            authorization = decode_authorization(grant.type_url, grant.payload)
        except AuthorizationDecodeError as e:
            logger.warning(
                "Failed to decode authorization from granter=%s: %s", grant.granter, e
            )
            continue

        if isinstance(authorization, UnrecognizedAuthorization):
            logger.debug(
                "Ignoring %s grant from granter=%s",
                authorization.type_url,
                grant.granter,
            )
            continue

        logger.debug(
            "Grant details: granter=%s grantee=%s msg=%s expiration=%s",
            grant.granter,
            grant.grantee,
            authorization.msg,
            grant.expiration.isoformat() if grant.expiration else None,
        )
        index[grant.granter].add(authorization.msg)

    return dict(index)


def compute_eligible_granters(
    grants: Iterable[Grant],
    required_permissions: Iterable[str],
    now: Optional[datetime] = None,
) -> set[str]:
    """Granters whose active grants cover every required permission."""
    required = frozenset(required_permissions)
    index = build_authorization_index(grants, now)
    return {granter for granter, granted in index.items() if granted >= required}
