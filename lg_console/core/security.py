# lg_console/core/security.py
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union

from fastapi import Depends, HTTPException, status, Request
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from pydantic import BaseModel, Field

from lg_console.constants import (
    SubscriptionStatus,
    GRACE_PERIOD_REFUSAL_MESSAGE,
    READ_ONLY_VIEW_REFUSAL_MESSAGE,
)
from lg_console.core.exceptions import GateRefusal

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="api/v2/login", auto_error=False)


class TokenData(BaseModel):
    email: Optional[str] = None
    user_id: Optional[int] = None
    role: Optional[str] = None
    customer_id: Optional[int] = Field(None, description="Customer the session belongs to")
    subscription_status: SubscriptionStatus = Field(SubscriptionStatus.ACTIVE, description="Current subscription status of the customer.")
    expires_at: Optional[datetime] = Field(None, description="When the authority stops accepting the token.")


@dataclass
class SubscriptionContext:
    """The subscription standing of the current session, read at the orchestration boundary."""
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE

    @property
    def mutation_allowed(self) -> bool:
        return can_mutate(self.status)


@dataclass
class SessionToken:
    raw: str
    data: TokenData


def can_mutate(subscription_status: Union[SubscriptionStatus, str]) -> bool:
    """True unless the subscription is in its grace period."""
    return SubscriptionStatus(subscription_status) != SubscriptionStatus.GRACE


def check_for_read_only_mode(context: SubscriptionContext, read_only_view: bool = False) -> None:
    """
    Raises GateRefusal when mutations are not allowed for this session or view.
    Expired subscriptions never reach this point; they are locked out by check_subscription_status.
    """
    if read_only_view:
        raise GateRefusal(READ_ONLY_VIEW_REFUSAL_MESSAGE)
    if not context.mutation_allowed:
        logger.info("Mutation refused: subscription is in grace period.")
        raise GateRefusal(GRACE_PERIOD_REFUSAL_MESSAGE)


def decode_session_token(token: str) -> TokenData:
    """
    Reads the claims of a session token issued by the authority.
    The signature is verified by the authority on every call, so only the claims are read here.
    """
    payload = jwt.get_unverified_claims(token)
    subscription_status = payload.get("subscription_status") or SubscriptionStatus.ACTIVE.value
    exp = payload.get("exp")
    return TokenData(
        email=payload.get("sub"),
        user_id=payload.get("user_id"),
        role=payload.get("role"),
        customer_id=payload.get("customer_id"),
        subscription_status=SubscriptionStatus(str(subscription_status).lower()),
        expires_at=datetime.fromtimestamp(float(exp), tz=timezone.utc) if exp is not None else None,
    )


# MODIFIED: accept the token from the query string as well, as the letter viewer does
async def get_current_session(
    request: Request,
    token: Optional[str] = Depends(oauth2_scheme),
) -> SessionToken:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if token is None:
        token = request.query_params.get("token")
        if token is None:
            raise credentials_exception

    try:
        token_data = decode_session_token(token)
    except JWTError:
        raise credentials_exception
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload or subscription status.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return SessionToken(raw=token, data=token_data)


async def check_subscription_status(session: SessionToken = Depends(get_current_session)) -> SessionToken:
    """Locks the whole console once the subscription has expired."""
    if session.data.subscription_status == SubscriptionStatus.EXPIRED:
        logger.warning(f"Access denied for customer {session.data.customer_id}: subscription expired.")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Your subscription has expired. Please renew to regain access.",
        )
    return session


async def get_subscription_context(session: SessionToken = Depends(check_subscription_status)) -> SubscriptionContext:
    return SubscriptionContext(status=session.data.subscription_status)
