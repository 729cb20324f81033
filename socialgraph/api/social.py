from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status

from socialgraph.api.auth import get_current_user_id
from socialgraph.dependencies import get_cache_coordinator, get_coordinator
from socialgraph.errors import (
    AuthenticationRequired,
    ConflictError,
    Duplicate,
    NetworkError,
    NotFound,
    PrivacyRestriction,
    RateLimitExceeded,
    SocialGraphError,
    SpamDetected,
    StoreUnavailable,
    Unauthorized,
    ValidationError,
)
from socialgraph.models.cache import CacheHealthReport
from socialgraph.models.follow_request import FollowRequest
from socialgraph.models.user import UserPage, UserProfile
from socialgraph.schemas.responses import (
    FollowRequestCreateSchema,
    FollowRequestResponseSchema,
    RelationshipStatusResponseSchema,
    SocialCountsResponseSchema,
    SpamReportSchema,
    SpamScoreResponseSchema,
    UserIdListResponseSchema,
)
from socialgraph.services.cache_coordinator import SocialMediaCacheCoordinator
from socialgraph.services.coordinator import SocialGraphCoordinator

router = APIRouter(prefix="/social", tags=["social"])

CurrentUser = Annotated[str, Depends(get_current_user_id)]
Coordinator = Annotated[SocialGraphCoordinator, Depends(get_coordinator)]

_STATUS_CODES: list[tuple[type[SocialGraphError], int]] = [
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (AuthenticationRequired, status.HTTP_401_UNAUTHORIZED),
    (Unauthorized, status.HTTP_403_FORBIDDEN),
    (PrivacyRestriction, status.HTTP_403_FORBIDDEN),
    (NotFound, status.HTTP_404_NOT_FOUND),
    (Duplicate, status.HTTP_409_CONFLICT),
    (ConflictError, status.HTTP_409_CONFLICT),
    (SpamDetected, status.HTTP_422_UNPROCESSABLE_CONTENT),
    (RateLimitExceeded, status.HTTP_429_TOO_MANY_REQUESTS),
    (NetworkError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (StoreUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def to_http_exception(error: SocialGraphError) -> HTTPException:
    """Map a social graph error to the HTTP response it should produce."""
    code = next(
        (code for kind, code in _STATUS_CODES if isinstance(error, kind)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    headers = None
    if isinstance(error, RateLimitExceeded):
        headers = {"Retry-After": str(error.retry_after)}
    elif isinstance(error, AuthenticationRequired):
        headers = {"WWW-Authenticate": "Bearer"}
    return HTTPException(status_code=code, detail=str(error), headers=headers)


@router.post("/follow/{user_id}", response_model=RelationshipStatusResponseSchema)
async def follow_user(
    user_id: str, current_user_id: CurrentUser, coordinator: Coordinator
) -> RelationshipStatusResponseSchema:
    """Follow a user, or request to follow a private account.

    Args:
        user_id: ID of the user to follow
        current_user_id: The authenticated user

    Returns:
        The resulting relationship status

    Raises:
        HTTPException: If the follow is rejected
    """
    try:
        result = await coordinator.follow(current_user_id, user_id)
    except SocialGraphError as e:
        raise to_http_exception(e)
    return RelationshipStatusResponseSchema(user_id=user_id, status=result)


@router.delete("/follow/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def unfollow_user(
    user_id: str, current_user_id: CurrentUser, coordinator: Coordinator
) -> None:
    try:
        await coordinator.unfollow(current_user_id, user_id)
    except SocialGraphError as e:
        raise to_http_exception(e)


@router.get("/relationship/{user_id}", response_model=RelationshipStatusResponseSchema)
async def check_relationship(
    user_id: str, current_user_id: CurrentUser, coordinator: Coordinator
) -> RelationshipStatusResponseSchema:
    try:
        result = await coordinator.check_relationship(current_user_id, user_id)
    except SocialGraphError as e:
        raise to_http_exception(e)
    return RelationshipStatusResponseSchema(user_id=user_id, status=result)


@router.post(
    "/users/{user_id}/follow-request",
    response_model=FollowRequest,
    status_code=status.HTTP_201_CREATED,
)
async def request_follow(
    user_id: str,
    body: FollowRequestCreateSchema,
    current_user_id: CurrentUser,
    coordinator: Coordinator,
) -> FollowRequest:
    try:
        return await coordinator.request_follow(current_user_id, user_id, body.message)
    except SocialGraphError as e:
        raise to_http_exception(e)


@router.post("/follow-requests/{request_id}/respond", response_model=FollowRequest)
async def respond_to_follow_request(
    request_id: str,
    body: FollowRequestResponseSchema,
    current_user_id: CurrentUser,
    coordinator: Coordinator,
) -> FollowRequest:
    """Accept or reject a follow request addressed to the current user.

    Args:
        request_id: ID of the follow request
        body: Whether to accept the request
        current_user_id: The authenticated user

    Returns:
        The resolved follow request

    Raises:
        HTTPException: If the request is missing, not addressed to the
            current user, or no longer pending
    """
    try:
        return await coordinator.respond_to_follow_request(
            current_user_id, request_id, body.accept
        )
    except SocialGraphError as e:
        raise to_http_exception(e)


@router.delete("/follow-requests/{request_id}", response_model=FollowRequest)
async def cancel_follow_request(
    request_id: str, current_user_id: CurrentUser, coordinator: Coordinator
) -> FollowRequest:
    try:
        return await coordinator.cancel_follow_request(current_user_id, request_id)
    except SocialGraphError as e:
        raise to_http_exception(e)


@router.get("/follow-requests/pending", response_model=list[FollowRequest])
async def get_pending_follow_requests(
    current_user_id: CurrentUser, coordinator: Coordinator
) -> list[FollowRequest]:
    try:
        return await coordinator.get_pending_follow_requests(current_user_id)
    except SocialGraphError as e:
        raise to_http_exception(e)


@router.get("/follow-requests/sent", response_model=list[FollowRequest])
async def get_sent_follow_requests(
    current_user_id: CurrentUser, coordinator: Coordinator
) -> list[FollowRequest]:
    try:
        return await coordinator.get_sent_follow_requests(current_user_id)
    except SocialGraphError as e:
        raise to_http_exception(e)


@router.post("/block/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def block_user(
    user_id: str, current_user_id: CurrentUser, coordinator: Coordinator
) -> None:
    try:
        await coordinator.block_user(current_user_id, user_id)
    except SocialGraphError as e:
        raise to_http_exception(e)


@router.delete("/block/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def unblock_user(
    user_id: str, current_user_id: CurrentUser, coordinator: Coordinator
) -> None:
    try:
        await coordinator.unblock_user(current_user_id, user_id)
    except SocialGraphError as e:
        raise to_http_exception(e)


@router.get("/blocked", response_model=UserIdListResponseSchema)
async def get_blocked_users(
    current_user_id: CurrentUser, coordinator: Coordinator
) -> UserIdListResponseSchema:
    try:
        return UserIdListResponseSchema(
            user_ids=await coordinator.get_blocked_users(current_user_id)
        )
    except SocialGraphError as e:
        raise to_http_exception(e)


@router.post("/mute/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def mute_user(
    user_id: str, current_user_id: CurrentUser, coordinator: Coordinator
) -> None:
    try:
        await coordinator.mute_user(current_user_id, user_id)
    except SocialGraphError as e:
        raise to_http_exception(e)


@router.delete("/mute/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def unmute_user(
    user_id: str, current_user_id: CurrentUser, coordinator: Coordinator
) -> None:
    try:
        await coordinator.unmute_user(current_user_id, user_id)
    except SocialGraphError as e:
        raise to_http_exception(e)


@router.get("/muted", response_model=UserIdListResponseSchema)
async def get_muted_users(
    current_user_id: CurrentUser, coordinator: Coordinator
) -> UserIdListResponseSchema:
    try:
        return UserIdListResponseSchema(
            user_ids=await coordinator.get_muted_users(current_user_id)
        )
    except SocialGraphError as e:
        raise to_http_exception(e)


@router.get("/users/{user_id}/followers", response_model=UserPage)
async def get_followers(
    user_id: str,
    current_user_id: CurrentUser,
    coordinator: Coordinator,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    cursor: str | None = None,
) -> UserPage:
    try:
        return await coordinator.get_followers(user_id, limit, cursor)
    except SocialGraphError as e:
        raise to_http_exception(e)


@router.get("/users/{user_id}/following", response_model=UserPage)
async def get_following(
    user_id: str,
    current_user_id: CurrentUser,
    coordinator: Coordinator,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    cursor: str | None = None,
) -> UserPage:
    try:
        return await coordinator.get_following(user_id, limit, cursor)
    except SocialGraphError as e:
        raise to_http_exception(e)


@router.get("/users/{user_id}/mutual", response_model=list[UserProfile])
async def get_mutual_followers(
    user_id: str,
    current_user_id: CurrentUser,
    coordinator: Coordinator,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
) -> list[UserProfile]:
    try:
        return await coordinator.get_mutual_followers(user_id, limit)
    except SocialGraphError as e:
        raise to_http_exception(e)


@router.get("/users/{user_id}/counts", response_model=SocialCountsResponseSchema)
async def get_social_counts(
    user_id: str, current_user_id: CurrentUser, coordinator: Coordinator
) -> SocialCountsResponseSchema:
    try:
        return SocialCountsResponseSchema(
            user_id=user_id,
            follower_count=await coordinator.get_follower_count(user_id),
            following_count=await coordinator.get_following_count(user_id),
        )
    except SocialGraphError as e:
        raise to_http_exception(e)


@router.post("/report/{user_id}", response_model=SpamScoreResponseSchema)
async def report_spam(
    user_id: str,
    body: SpamReportSchema,
    current_user_id: CurrentUser,
    coordinator: Coordinator,
) -> SpamScoreResponseSchema:
    try:
        score = await coordinator.report_spam(current_user_id, user_id, body.reason)
    except SocialGraphError as e:
        raise to_http_exception(e)
    return SpamScoreResponseSchema(user_id=user_id, score=score)


@router.get("/cache/health", response_model=CacheHealthReport)
async def get_cache_health(
    current_user_id: CurrentUser,
    cache_coordinator: Annotated[SocialMediaCacheCoordinator, Depends(get_cache_coordinator)],
    mine: bool = False,
) -> CacheHealthReport:
    """Report on cache health, optionally scoped to the current user's entries."""
    return await cache_coordinator.get_cache_health_report(current_user_id if mine else None)
