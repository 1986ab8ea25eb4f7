from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from pothichor import Settings, build_marketplace
from pothichor.errors import (
    AuthError,
    CapacityExceeded,
    DependencyError,
    Forbidden,
    NotAuthenticated,
    NotFound,
    PersistenceError,
    PothichorError,
    ProfileIncomplete,
    ValidationError,
)
from pothichor.marketplace import Marketplace
from pothichor.models import (
    CatalogMeal,
    ListingDraft,
    Location,
    Meal,
    Order,
    PastOrder,
    Profile,
    ProfileDetails,
    UserRole,
)
from pothichor.ordering import total_spent
from pothichor.profiles import Session
from pothichor.reminders import PeriodicTask

logger = logging.getLogger("pothichor_server")
logging.basicConfig(level=logging.INFO)


class ProfileResponse(BaseModel):
    id: str
    email: str
    role: Optional[UserRole] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    location: Optional[Location] = None
    complete: bool
    reminders_active: bool = False


class RoleRequest(BaseModel):
    role: UserRole


class OrderRequest(BaseModel):
    quantity: int = Field(1, ge=1, le=50)


class SearchRequest(BaseModel):
    question: str = Field(min_length=1, max_length=500)


class MealView(BaseModel):
    meal: CatalogMeal
    remaining: int
    open_for_orders: bool


class StudentOrderView(BaseModel):
    order_id: str
    quantity: int
    created_at: datetime
    amount: float
    meal: CatalogMeal


class OrderConfirmation(BaseModel):
    order: Order
    meal: CatalogMeal
    message: str = ""
    reminder_id: Optional[str] = None
    confirmation_sent: bool = False


class StudentOrdersResponse(BaseModel):
    orders: List[StudentOrderView]
    total_amount: float


class SweepResponse(BaseModel):
    settled: List[PastOrder]


def _status_for(exc: PothichorError) -> int:
    if isinstance(exc, (AuthError, NotAuthenticated)):
        return 401
    if isinstance(exc, (ProfileIncomplete, Forbidden)):
        return 403
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, CapacityExceeded):
        return 409
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, PersistenceError):
        return 503 if exc.reason == PersistenceError.NETWORK_BLOCKED else 500
    if isinstance(exc, DependencyError):
        return 502
    return 500


class MarketplaceService:
    """Async facade over the marketplace; owns per-session pollers and server-wide sweeps."""

    def __init__(self, market: Marketplace):
        self.market = market
        self.settings = market.settings
        self._background: List[PeriodicTask] = []

    async def sign_in(self, token: str) -> Session:
        session = await asyncio.to_thread(self.market.profiles.sign_in, token)
        self._ensure_reminder_poller(session)
        return session

    async def authenticate(self, token: str) -> Session:
        return await asyncio.to_thread(self.market.profiles.authenticate, token)

    async def sign_out(self, user_id: str) -> None:
        session = await asyncio.to_thread(self.market.profiles.sign_out, user_id)
        if session is not None and session.reminder_poller is not None:
            await session.reminder_poller.cancel()
            session.reminder_poller = None

    async def set_role(self, session: Session, role: UserRole) -> Profile:
        profile = await asyncio.to_thread(self.market.profiles.set_role, session.user_id, role)
        self._ensure_reminder_poller(session)
        return profile

    async def set_profile_details(self, session: Session, details: ProfileDetails) -> Profile:
        return await asyncio.to_thread(self.market.profiles.set_profile_details, session.user_id, details)

    async def create_listing(self, session: Session, draft: ListingDraft) -> Meal:
        house = session.complete(UserRole.HOUSE)
        return await asyncio.to_thread(self.market.listings.create_listing, house, draft)

    async def own_listings(self, session: Session) -> List[Meal]:
        house = session.complete(UserRole.HOUSE)
        return await asyncio.to_thread(self.market.listings.list_own_listings, house.id)

    async def past_orders(self, session: Session) -> List[PastOrder]:
        house = session.complete(UserRole.HOUSE)
        return await asyncio.to_thread(self.market.listings.list_past_orders, house.id)

    async def settle_own(self, session: Session) -> List[PastOrder]:
        house = session.complete(UserRole.HOUSE)
        return await asyncio.to_thread(self.market.listings.run_completion_sweep, house.id)

    async def open_meals(self) -> List[Meal]:
        return await asyncio.to_thread(self.market.ordering.list_open_meals)

    async def search(self, question: str) -> List[Meal]:
        return await asyncio.to_thread(self.market.ordering.search_meals, question)

    async def place_order(self, session: Session, meal_id: str, quantity: int) -> OrderConfirmation:
        student = session.complete(UserRole.STUDENT)
        receipt = await asyncio.to_thread(self.market.ordering.place_order, student, meal_id, quantity)
        return OrderConfirmation(
            order=receipt.order,
            meal=receipt.meal.for_students(),
            message=receipt.message,
            reminder_id=receipt.reminder_id,
            confirmation_sent=receipt.confirmation_sent,
        )

    async def student_orders(self, session: Session) -> StudentOrdersResponse:
        student = session.complete(UserRole.STUDENT)
        orders = await asyncio.to_thread(self.market.ordering.list_student_orders, student.id)
        return StudentOrdersResponse(
            orders=[
                StudentOrderView(
                    order_id=item.order.id,
                    quantity=item.order.quantity,
                    created_at=item.order.created_at,
                    amount=item.amount,
                    meal=item.meal.for_students(),
                )
                for item in orders
            ],
            total_amount=total_spent(orders),
        )

    def start_background(self) -> None:
        if not self.settings.enable_background_sweeps:
            logger.info("Background sweeps disabled (set ENABLE_BACKGROUND_SWEEPS=true to enable).")
            return
        self._background = [
            PeriodicTask(
                "completion sweep",
                self.market.listings.run_completion_sweep,
                self.settings.completion_sweep_interval_seconds,
            ),
            PeriodicTask(
                "reminder dispatch",
                self.market.reminders.dispatch_due,
                self.settings.reminder_poll_interval_seconds,
            ),
        ]
        for task in self._background:
            task.start()

    async def stop_background(self) -> None:
        tasks, self._background = self._background, []
        for session in self.market.profiles.active_sessions():
            if session.reminder_poller is not None:
                tasks.append(session.reminder_poller)
                session.reminder_poller = None
        for task in tasks:
            await task.cancel()

    def _ensure_reminder_poller(self, session: Session) -> None:
        if session.profile.role != UserRole.STUDENT:
            return
        if session.reminder_poller is not None and session.reminder_poller.running:
            return
        session.reminder_poller = self.market.reminders.start_polling(
            session.identity.email, self.settings.reminder_poll_interval_seconds
        )


def _profile_response(session: Session) -> ProfileResponse:
    profile = session.profile
    return ProfileResponse(
        id=profile.id,
        email=profile.email,
        role=profile.role,
        name=profile.name,
        phone=profile.phone,
        location=profile.location,
        complete=profile.is_complete,
        reminders_active=bool(session.reminder_poller and session.reminder_poller.running),
    )


def _meal_view(meal: Meal) -> MealView:
    return MealView(meal=meal.for_students(), remaining=meal.remaining, open_for_orders=meal.is_available)


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token.")
    return authorization.split(" ", 1)[1].strip()


def create_app(service: MarketplaceService) -> FastAPI:
    app = FastAPI(title="Pothichor API")
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(service.settings.frontend_origins),
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=True,
    )

    @app.exception_handler(PothichorError)
    async def _handle_domain_error(request: Request, exc: PothichorError) -> JSONResponse:
        status = _status_for(exc)
        payload: Dict[str, Any] = {"detail": str(exc), "error": type(exc).__name__}
        if isinstance(exc, PersistenceError):
            payload["reason"] = exc.reason
            payload["hint"] = exc.hint
        if isinstance(exc, CapacityExceeded):
            payload["remaining"] = exc.remaining
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status, content=payload)

    async def current_session(authorization: Optional[str] = Header(default=None)) -> Session:
        return await service.authenticate(_bearer_token(authorization))

    @app.on_event("startup")
    async def _startup() -> None:
        service.start_background()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await service.stop_background()

    @app.get("/health", tags=["meta"])
    async def health() -> Dict[str, Any]:
        return {
            "status": "ok",
            "store": service.market.store.backend_name,
            "email_dry_run": service.market.dispatcher.dry_run,
        }

    @app.post("/api/session", response_model=ProfileResponse)
    async def sign_in(authorization: Optional[str] = Header(default=None)) -> ProfileResponse:
        session = await service.sign_in(_bearer_token(authorization))
        return _profile_response(session)

    @app.delete("/api/session", status_code=204)
    async def sign_out(authorization: Optional[str] = Header(default=None)) -> None:
        identity = await asyncio.to_thread(
            service.market.profiles.identity_provider.verify, _bearer_token(authorization)
        )
        await service.sign_out(identity.subject)

    @app.get("/api/profile", response_model=ProfileResponse)
    async def get_profile(session: Session = Depends(current_session)) -> ProfileResponse:
        return _profile_response(session)

    @app.put("/api/profile/role", response_model=ProfileResponse)
    async def set_role(request: RoleRequest, session: Session = Depends(current_session)) -> ProfileResponse:
        await service.set_role(session, request.role)
        return _profile_response(session)

    @app.put("/api/profile", response_model=ProfileResponse)
    async def set_profile(
        request: ProfileDetails, session: Session = Depends(current_session)
    ) -> ProfileResponse:
        await service.set_profile_details(session, request)
        return _profile_response(session)

    @app.get("/api/meals", response_model=List[MealView])
    async def open_meals(session: Session = Depends(current_session)) -> List[MealView]:
        return [_meal_view(meal) for meal in await service.open_meals()]

    @app.post("/api/meals/search", response_model=List[MealView])
    async def search_meals(
        request: SearchRequest, session: Session = Depends(current_session)
    ) -> List[MealView]:
        return [_meal_view(meal) for meal in await service.search(request.question)]

    @app.post("/api/meals/{meal_id}/orders", response_model=OrderConfirmation, status_code=201)
    async def place_order(
        meal_id: str, request: OrderRequest, session: Session = Depends(current_session)
    ) -> OrderConfirmation:
        return await service.place_order(session, meal_id, request.quantity)

    @app.get("/api/orders", response_model=StudentOrdersResponse)
    async def my_orders(session: Session = Depends(current_session)) -> StudentOrdersResponse:
        return await service.student_orders(session)

    @app.post("/api/listings", response_model=Meal, status_code=201)
    async def create_listing(draft: ListingDraft, session: Session = Depends(current_session)) -> Meal:
        return await service.create_listing(session, draft)

    @app.get("/api/listings", response_model=List[Meal])
    async def own_listings(session: Session = Depends(current_session)) -> List[Meal]:
        return await service.own_listings(session)

    @app.get("/api/listings/past", response_model=List[PastOrder])
    async def past_orders(session: Session = Depends(current_session)) -> List[PastOrder]:
        return await service.past_orders(session)

    @app.post("/api/listings/sweep", response_model=SweepResponse)
    async def settle(session: Session = Depends(current_session)) -> SweepResponse:
        return SweepResponse(settled=await service.settle_own(session))

    return app


config = Settings()
service = MarketplaceService(build_marketplace(config))
app = create_app(service)


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
