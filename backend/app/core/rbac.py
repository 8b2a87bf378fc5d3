"""Request principals and the role checks guarding order and printer endpoints."""

from enum import Enum
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, Request, status

from app.core.security import decode_access_token


class UserRole(str, Enum):
    """Who is calling: restaurant staff tiers or a signed-in diner."""

    OWNER = "owner"
    MANAGER = "manager"
    STAFF = "staff"
    CUSTOMER = "customer"


# Higher rank includes the permissions of every lower one
ROLE_HIERARCHY = {
    UserRole.OWNER: 3,
    UserRole.MANAGER: 2,
    UserRole.STAFF: 1,
    UserRole.CUSTOMER: 0,
}


class TokenData:
    """Decoded token data, the principal of a request.

    Attributes:
        user_id: The user's ID.
        id: Alias for user_id.
        role: The user's role.
        restaurant_id: Restaurant the user works for (staff roles only).
        email: The user's email address, if present in the token.
    """

    def __init__(self, user_id: int, role: UserRole,
                 restaurant_id: Optional[int] = None, email: str = ""):
        self.user_id = user_id
        self.id = user_id
        self.role = role
        self.restaurant_id = restaurant_id
        self.email = email

    @property
    def is_staff(self) -> bool:
        return ROLE_HIERARCHY.get(self.role, 0) >= ROLE_HIERARCHY[UserRole.STAFF]

    def __repr__(self) -> str:
        return f"TokenData(user_id={self.user_id}, role={self.role.value}, restaurant_id={self.restaurant_id})"


def can_manage_restaurant(principal: Optional[TokenData], restaurant) -> bool:
    """True when the principal owns the restaurant or is on its staff."""
    if principal is None or restaurant is None or not principal.is_staff:
        return False
    if principal.role == UserRole.OWNER and restaurant.owner_id == principal.id:
        return True
    return principal.restaurant_id is not None and principal.restaurant_id == restaurant.id


def read_token(request: Request) -> Optional[dict]:
    """Decode the Bearer token, falling back to the access_token cookie."""
    payload = None

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header.split(" ", 1)[1]
        if token:
            payload = decode_access_token(token)

    if payload is None:
        cookie_token = request.cookies.get("access_token")
        if cookie_token:
            payload = decode_access_token(cookie_token)

    return payload


def _token_data(payload: dict) -> Optional[TokenData]:
    user_id = payload.get("sub")
    role = payload.get("role")
    if user_id is None or role is None:
        return None

    try:
        user_role = UserRole(role)
        restaurant_id = payload.get("restaurant_id")
        return TokenData(
            user_id=int(user_id),
            role=user_role,
            restaurant_id=int(restaurant_id) if restaurant_id is not None else None,
            email=payload.get("email") or "",
        )
    except (TypeError, ValueError):
        return None


async def get_current_user(request: Request) -> TokenData:
    """Principal of the request, or 401 when no usable token was sent."""
    payload = read_token(request)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    current_user = _token_data(payload)
    if current_user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )
    return current_user


async def get_optional_current_user(request: Request) -> Optional[TokenData]:
    """Principal of a signed-in caller; None for guests and unreadable tokens."""
    payload = read_token(request)
    if payload is None:
        return None
    return _token_data(payload)


def require_role(minimum_role: UserRole):
    """Dependency rejecting callers ranked below ``minimum_role`` with 403."""

    async def role_checker(
        current_user: Annotated[TokenData, Depends(get_current_user)]
    ) -> TokenData:
        user_level = ROLE_HIERARCHY.get(current_user.role, 0)
        required_level = ROLE_HIERARCHY.get(minimum_role, 0)

        if user_level < required_level:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires role {minimum_role.value} or higher",
            )
        return current_user

    return role_checker


RequireStaff = Annotated[TokenData, Depends(require_role(UserRole.STAFF))]
CurrentUser = Annotated[TokenData, Depends(get_current_user)]
OptionalCurrentUser = Annotated[Optional[TokenData], Depends(get_optional_current_user)]


def require_restaurant_staff(db, principal: Optional[TokenData], restaurant_id: int):
    """Load a restaurant the principal may manage.

    Raises NotFound for an unknown restaurant and Forbidden otherwise.
    """
    from app.core.exceptions import Forbidden, NotFound
    from app.models.restaurant import Restaurant

    restaurant = db.get(Restaurant, restaurant_id)
    if restaurant is None:
        raise NotFound(f"Restaurant {restaurant_id} not found")
    if not can_manage_restaurant(principal, restaurant):
        raise Forbidden("Not authorized for this restaurant")
    return restaurant
