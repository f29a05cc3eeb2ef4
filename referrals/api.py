from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import FastAPI, HTTPException, Query, Response, status
from fastapi.middleware.cors import CORSMiddleware

from .errors import (
    CodeGenerationExhausted, CodeUnavailable, Forbidden, HasReferralHistory,
    InvalidCodeFormat, InvalidCodePolicy, NotFound, NotPending,
    RedemptionRejected, ReferralError, RetryExhausted,
)
from .logging_config import setup_logging
from .models import (
    CancelRequest, CodeBreakdown, CodeValidationResponse, CreateCodeRequest,
    CustomCodeCheckRequest, CustomCodeCheckResponse, ActivityEntry, PointsBalance,
    PointsHistoryResponse, RedeemRequest, ReferralCodeRecord, ReferralSummary,
    TrackingDirection, TrackingRecord, UpdateCodeRequest,
)
from .service import ReferralService
from .settings import settings


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    referral_service.init_storage()
    yield


app = FastAPI(
    title="Referral Engine API",
    description="Referral codes, redemption tracking, points and conversion analytics",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

referral_service = ReferralService()


def _error(status_code: int, e: ReferralError) -> HTTPException:
    return HTTPException(status_code=status_code, detail=e.to_dict())


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": settings.app_name}


@app.post("/codes", response_model=ReferralCodeRecord, status_code=status.HTTP_201_CREATED, tags=["Codes"])
def create_code(request: CreateCodeRequest) -> ReferralCodeRecord:
    try:
        return referral_service.registry.create_code(request)
    except InvalidCodeFormat as e:
        raise _error(status.HTTP_400_BAD_REQUEST, e)
    except CodeUnavailable as e:
        raise _error(status.HTTP_409_CONFLICT, e)
    except (CodeGenerationExhausted, RetryExhausted) as e:
        raise _error(status.HTTP_503_SERVICE_UNAVAILABLE, e)


@app.get("/codes", response_model=list[ReferralCodeRecord], tags=["Codes"])
def list_codes(owner_id: UUID) -> list[ReferralCodeRecord]:
    return referral_service.registry.list_codes(owner_id)


@app.get("/codes/validate", response_model=CodeValidationResponse, tags=["Codes"])
def validate_code(code: str) -> CodeValidationResponse:
    return referral_service.registry.validate_code(code)


@app.post("/codes/custom/check", response_model=CustomCodeCheckResponse, tags=["Codes"])
def check_custom_code(request: CustomCodeCheckRequest) -> CustomCodeCheckResponse:
    return referral_service.registry.check_custom_code(request.custom_code)


@app.patch("/codes/{code_id}", response_model=ReferralCodeRecord, tags=["Codes"])
def update_code(code_id: UUID, request: UpdateCodeRequest) -> ReferralCodeRecord:
    try:
        return referral_service.registry.update_code(code_id, request)
    except NotFound as e:
        raise _error(status.HTTP_404_NOT_FOUND, e)
    except InvalidCodePolicy as e:
        raise _error(status.HTTP_400_BAD_REQUEST, e)
    except RetryExhausted as e:
        raise _error(status.HTTP_503_SERVICE_UNAVAILABLE, e)


@app.delete("/codes/{code_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Codes"])
def delete_code(code_id: UUID, owner_id: UUID, archive: bool = False) -> Response:
    try:
        referral_service.registry.delete_code(code_id, owner_id, archive=archive)
    except NotFound as e:
        raise _error(status.HTTP_404_NOT_FOUND, e)
    except HasReferralHistory as e:
        raise _error(status.HTTP_409_CONFLICT, e)
    except RetryExhausted as e:
        raise _error(status.HTTP_503_SERVICE_UNAVAILABLE, e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/redemptions", response_model=TrackingRecord, status_code=status.HTTP_201_CREATED, tags=["Redemptions"])
def redeem_code(request: RedeemRequest) -> TrackingRecord:
    try:
        return referral_service.ledger.redeem(request.code, request.referred_user_id)
    except NotFound as e:
        raise _error(status.HTTP_404_NOT_FOUND, e)
    except RedemptionRejected as e:
        raise _error(status.HTTP_409_CONFLICT, e)
    except RetryExhausted as e:
        raise _error(status.HTTP_503_SERVICE_UNAVAILABLE, e)


@app.get("/redemptions/{tracking_id}", response_model=TrackingRecord, tags=["Redemptions"])
def get_redemption(tracking_id: UUID, user_id: Optional[UUID] = None) -> TrackingRecord:
    try:
        return referral_service.ledger.get_tracking(tracking_id, user_id=user_id)
    except NotFound as e:
        raise _error(status.HTTP_404_NOT_FOUND, e)
    except Forbidden as e:
        raise _error(status.HTTP_403_FORBIDDEN, e)


@app.post("/redemptions/{tracking_id}/finalize", response_model=TrackingRecord, tags=["Redemptions"])
def finalize_referral(tracking_id: UUID) -> TrackingRecord:
    try:
        return referral_service.ledger.finalize(tracking_id)
    except NotFound as e:
        raise _error(status.HTTP_404_NOT_FOUND, e)
    except NotPending as e:
        raise _error(status.HTTP_409_CONFLICT, e)
    except RetryExhausted as e:
        raise _error(status.HTTP_503_SERVICE_UNAVAILABLE, e)


@app.post("/redemptions/{tracking_id}/cancel", response_model=TrackingRecord, tags=["Redemptions"])
def cancel_referral(tracking_id: UUID, request: CancelRequest) -> TrackingRecord:
    try:
        return referral_service.ledger.cancel(tracking_id, request.reason)
    except NotFound as e:
        raise _error(status.HTTP_404_NOT_FOUND, e)
    except NotPending as e:
        raise _error(status.HTTP_409_CONFLICT, e)
    except RetryExhausted as e:
        raise _error(status.HTTP_503_SERVICE_UNAVAILABLE, e)


@app.get("/users/{user_id}/referrals", response_model=list[TrackingRecord], tags=["Users"])
def list_user_referrals(user_id: UUID, direction: TrackingDirection = TrackingDirection.SENT) -> list[TrackingRecord]:
    return referral_service.ledger.list_tracking(user_id, direction)


@app.get("/users/{user_id}/points", response_model=PointsBalance, tags=["Users"])
def get_user_points(user_id: UUID) -> PointsBalance:
    return referral_service.points.balance(user_id)


@app.get("/users/{user_id}/points/history", response_model=PointsHistoryResponse, tags=["Users"])
def get_user_points_history(
    user_id: UUID, limit: int = Query(default=50, ge=1, le=500), offset: int = Query(default=0, ge=0)
) -> PointsHistoryResponse:
    return referral_service.points.history(user_id, limit, offset)


@app.get("/analytics/owners/{owner_id}", response_model=ReferralSummary, tags=["Analytics"])
def get_owner_summary(owner_id: UUID, since: Optional[datetime] = None) -> ReferralSummary:
    return referral_service.analytics.windowed(since, owner_id=owner_id)


@app.get("/analytics/owners/{owner_id}/codes", response_model=list[CodeBreakdown], tags=["Analytics"])
def get_owner_code_breakdown(owner_id: UUID) -> list[CodeBreakdown]:
    return referral_service.analytics.code_breakdown(owner_id)


@app.get("/analytics/summary", response_model=ReferralSummary, tags=["Analytics"])
def get_global_summary(since: Optional[datetime] = None) -> ReferralSummary:
    return referral_service.analytics.windowed(since)


@app.get("/analytics/top-performers", response_model=list[ReferralSummary], tags=["Analytics"])
def get_top_performers(
    limit: int = Query(default=10, ge=1, le=100), since: Optional[datetime] = None
) -> list[ReferralSummary]:
    return referral_service.analytics.global_top_performers(limit, since=since)


@app.get("/analytics/activity", response_model=list[ActivityEntry], tags=["Analytics"])
def get_recent_activity(
    owner_id: Optional[UUID] = None, limit: int = Query(default=10, ge=1, le=100)
) -> list[ActivityEntry]:
    return referral_service.analytics.recent_activity(owner_id, limit)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
