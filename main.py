import asyncio
import json
import logging
from contextlib import asynccontextmanager, suppress
from datetime import datetime
from typing import List, Optional

import pydantic
from fastapi import Depends, FastAPI, File, Form, Header, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pymongo.database import Database

import database
import maintenance
from config import Config, setup_logging
from database import ensure_indexes, get_db
from errors import ParkingError, Unauthorized, ValidationError
from notifications import NotificationCenter
from points import LeaderboardEntry, PointsLedger
from schemas import (
    Location,
    NearbySpot,
    Notification,
    ParkingSession,
    ParkingSpot,
    Reward,
    SpotReport,
    SpotType,
    User,
    UserPreferences,
    Vehicle,
)
from sessions import SessionLedger
from spots import SpotLifecycle
from users import UserDirectory

setup_logging()
logger = logging.getLogger(__name__)


class Services:
    """The services for one request, all bound to the same database."""

    def __init__(self, db: Database):
        self.notifications = NotificationCenter(db)
        self.users = UserDirectory(db)
        self.points = PointsLedger(db, self.notifications)
        self.spots = SpotLifecycle(db, self.points, self.notifications)
        self.sessions = SessionLedger(db, self.spots, self.users, self.notifications)


def get_services(db: Database = Depends(get_db)) -> Services:
    return Services(db)


def current_user_id(x_user_id: str = Header(..., description="Identity provider uid")) -> str:
    return x_user_id


@asynccontextmanager
async def lifespan(app: FastAPI):
    sweeper = None
    if database.db is not None:
        ensure_indexes(database.db)
        if Config.SWEEP_INTERVAL_SECONDS > 0:
            def factory():
                services = Services(database.db)
                return services.spots, services.sessions

            sweeper = asyncio.create_task(
                maintenance.run_periodic(factory, Config.SWEEP_INTERVAL_SECONDS)
            )
            logger.info(f"Sweeping every {Config.SWEEP_INTERVAL_SECONDS}s")
    yield
    if sweeper is not None:
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper


app = FastAPI(title="Community Parking API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=Config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ParkingError)
async def parking_error_handler(request: Request, exc: ParkingError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "detail": exc.detail})


@app.get("/")
def read_root():
    return {"message": "Community Parking API is running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available" if database.db is None else "✅ Connected",
    }
    try:
        response["collections"] = database.db.list_collection_names() if database.db is not None else []
    except Exception as e:
        response["database"] = f"⚠️ {str(e)[:50]}"
    return response


# Users

class RegisterRequest(BaseModel):
    email: str
    display_name: Optional[str] = None
    photo_url: Optional[str] = None


class VehicleRequest(BaseModel):
    make: str
    model: str
    year: int
    license_plate: str
    color: str = ""


class PreferencesUpdate(BaseModel):
    notification_radius: Optional[float] = None
    notifications_enabled: Optional[bool] = None
    dark_mode_enabled: Optional[bool] = None
    preferred_parking_types: Optional[List[SpotType]] = None
    max_parking_cost: Optional[float] = None


@app.post("/users", response_model=User, status_code=201)
def register_user(req: RegisterRequest, user_id: str = Depends(current_user_id),
                  services: Services = Depends(get_services)):
    return services.users.register(user_id, req.email, req.display_name, req.photo_url)


@app.get("/users/me", response_model=User)
def get_me(user_id: str = Depends(current_user_id), services: Services = Depends(get_services)):
    return services.users.get(user_id)


@app.get("/users/me/vehicles", response_model=List[Vehicle])
def list_vehicles(user_id: str = Depends(current_user_id), services: Services = Depends(get_services)):
    return services.users.vehicles(user_id)


@app.post("/users/me/vehicles", response_model=Vehicle, status_code=201)
def add_vehicle(req: VehicleRequest, user_id: str = Depends(current_user_id),
                services: Services = Depends(get_services)):
    return services.users.add_vehicle(user_id, req.model_dump())


@app.delete("/users/me/vehicles/{vehicle_id}")
def remove_vehicle(vehicle_id: str, user_id: str = Depends(current_user_id),
                   services: Services = Depends(get_services)):
    services.users.remove_vehicle(user_id, vehicle_id)
    return {"status": "deleted"}


@app.get("/users/me/preferences", response_model=UserPreferences)
def get_preferences(user_id: str = Depends(current_user_id), services: Services = Depends(get_services)):
    return services.users.preferences(user_id)


@app.put("/users/me/preferences", response_model=UserPreferences)
def update_preferences(req: PreferencesUpdate, user_id: str = Depends(current_user_id),
                       services: Services = Depends(get_services)):
    return services.users.update_preferences(user_id, req.model_dump(exclude_unset=True))


# Spots

class SpotCreated(BaseModel):
    spot_id: str


class RateRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


@app.post("/spots", response_model=SpotCreated, status_code=201)
def report_spot(req: SpotReport, user_id: str = Depends(current_user_id),
                services: Services = Depends(get_services)):
    reporter = services.users.get(user_id)
    return SpotCreated(spot_id=services.spots.report(req, reporter))


@app.post("/spots/upload", response_model=SpotCreated, status_code=201)
def report_spot_with_photo(
    report: str = Form(..., description="SpotReport as JSON"),
    photo: Optional[UploadFile] = File(None),
    user_id: str = Depends(current_user_id),
    services: Services = Depends(get_services),
):
    try:
        data = SpotReport.model_validate(json.loads(report))
    except (ValueError, pydantic.ValidationError) as e:
        raise ValidationError(f"Invalid spot report: {e}")

    reporter = services.users.get(user_id)
    upload = None
    if photo is not None:
        upload = (photo.filename or "photo.jpg", photo.file.read(), photo.content_type or "image/jpeg")
    return SpotCreated(spot_id=services.spots.report(data, reporter, upload))


@app.get("/spots/nearby", response_model=List[NearbySpot])
def nearby_spots(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    radius: float = Query(1.0, gt=0, description="Radius in km"),
    limit: int = Query(20, gt=0, le=100),
    services: Services = Depends(get_services),
):
    return services.spots.find_nearby(Location(latitude=lat, longitude=lng), radius, limit)


@app.get("/spots/{spot_id}", response_model=ParkingSpot)
def get_spot(spot_id: str, services: Services = Depends(get_services)):
    return services.spots.get(spot_id)


@app.post("/spots/{spot_id}/verify", response_model=ParkingSpot)
def verify_spot(spot_id: str, user_id: str = Depends(current_user_id),
                services: Services = Depends(get_services)):
    return services.spots.verify(spot_id, user_id)


@app.post("/spots/{spot_id}/rate", response_model=ParkingSpot)
def rate_spot(spot_id: str, req: RateRequest, user_id: str = Depends(current_user_id),
              services: Services = Depends(get_services)):
    return services.spots.rate(spot_id, user_id, req.rating, req.comment)


@app.delete("/spots/{spot_id}")
def delete_spot(spot_id: str, user_id: str = Depends(current_user_id),
                services: Services = Depends(get_services)):
    services.spots.delete(spot_id, user_id)
    return {"status": "deleted"}


# Sessions

class StartSessionRequest(BaseModel):
    spot_id: str
    vehicle_id: str


class SessionResponse(BaseModel):
    session_id: str
    status: str


class ReminderRequest(BaseModel):
    reminder_time: datetime


def _own_session(services: Services, session_id: str, user_id: str) -> ParkingSession:
    session = services.sessions.get(session_id)
    if session.user_id != user_id:
        raise Unauthorized("Not authorized to modify this session")
    return session


@app.post("/sessions/start", response_model=SessionResponse, status_code=201)
def start_session(req: StartSessionRequest, user_id: str = Depends(current_user_id),
                  services: Services = Depends(get_services)):
    session_id = services.sessions.start(user_id, req.spot_id, req.vehicle_id)
    return SessionResponse(session_id=session_id, status="active")


@app.post("/sessions/{session_id}/end", response_model=ParkingSession)
def end_session(session_id: str, user_id: str = Depends(current_user_id),
                services: Services = Depends(get_services)):
    _own_session(services, session_id, user_id)
    return services.sessions.end(session_id)


@app.get("/sessions/active", response_model=Optional[ParkingSession])
def active_session(user_id: str = Depends(current_user_id), services: Services = Depends(get_services)):
    return services.sessions.active_for(user_id)


@app.get("/sessions/history", response_model=List[ParkingSession])
def session_history(limit: int = Query(10, gt=0, le=100), user_id: str = Depends(current_user_id),
                    services: Services = Depends(get_services)):
    return services.sessions.history_for(user_id, limit)


@app.get("/sessions/{session_id}", response_model=ParkingSession)
def get_session(session_id: str, user_id: str = Depends(current_user_id),
                services: Services = Depends(get_services)):
    return _own_session(services, session_id, user_id)


@app.put("/sessions/{session_id}/reminder", response_model=ParkingSession)
def set_reminder(session_id: str, req: ReminderRequest, user_id: str = Depends(current_user_id),
                 services: Services = Depends(get_services)):
    _own_session(services, session_id, user_id)
    services.sessions.set_reminder(session_id, req.reminder_time)
    return services.sessions.get(session_id)


@app.delete("/sessions/{session_id}/reminder", response_model=ParkingSession)
def cancel_reminder(session_id: str, user_id: str = Depends(current_user_id),
                    services: Services = Depends(get_services)):
    _own_session(services, session_id, user_id)
    services.sessions.cancel_reminder(session_id)
    return services.sessions.get(session_id)


@app.delete("/sessions/{session_id}")
def delete_session(session_id: str, user_id: str = Depends(current_user_id),
                   services: Services = Depends(get_services)):
    services.sessions.delete(session_id, user_id)
    return {"status": "deleted"}


# Points, rewards and leaderboard

class PointsResponse(BaseModel):
    points: int
    ranking: int


@app.get("/points", response_model=PointsResponse)
def my_points(user_id: str = Depends(current_user_id), services: Services = Depends(get_services)):
    return PointsResponse(points=services.points.balance(user_id), ranking=services.points.ranking(user_id))


@app.get("/rewards", response_model=List[Reward])
def list_rewards(limit: int = Query(20, gt=0, le=100), user_id: str = Depends(current_user_id),
                 services: Services = Depends(get_services)):
    return services.points.rewards_for(user_id, limit)


@app.post("/rewards/{reward_id}/claim")
def claim_reward(reward_id: str, user_id: str = Depends(current_user_id),
                 services: Services = Depends(get_services)):
    return {"points": services.points.claim(reward_id, user_id)}


@app.get("/leaderboard", response_model=List[LeaderboardEntry])
def leaderboard(limit: int = Query(10, gt=0, le=100), services: Services = Depends(get_services)):
    return services.points.leaderboard(limit)


# Notifications

@app.get("/notifications", response_model=List[Notification])
def list_notifications(limit: int = Query(20, gt=0, le=100), user_id: str = Depends(current_user_id),
                       services: Services = Depends(get_services)):
    return services.notifications.list_for(user_id, limit)


@app.post("/notifications/read-all")
def read_all_notifications(user_id: str = Depends(current_user_id),
                           services: Services = Depends(get_services)):
    return {"updated": services.notifications.mark_all_read(user_id)}


@app.post("/notifications/{notification_id}/read")
def read_notification(notification_id: str, user_id: str = Depends(current_user_id),
                      services: Services = Depends(get_services)):
    services.notifications.mark_read(notification_id, user_id)
    return {"status": "read"}


@app.delete("/notifications/{notification_id}")
def delete_notification(notification_id: str, user_id: str = Depends(current_user_id),
                        services: Services = Depends(get_services)):
    services.notifications.delete(notification_id, user_id)
    return {"status": "deleted"}


# Maintenance

@app.post("/maintenance/sweep")
def run_sweep(services: Services = Depends(get_services)):
    return maintenance.sweep(services.spots, services.sessions)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=Config.PORT)
