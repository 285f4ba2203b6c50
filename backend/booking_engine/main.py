from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware

from booking_engine.routers import bookings, notifications, scheduling
from booking_engine.services.engine import booking_engine
from booking_engine.services.push_sender import push_sender
from booking_engine.settings import settings

app = FastAPI(title="Practitioner Booking API", version="0.1.0")

allow_any_origin = settings.cors_origins == ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    # Browsers reject wildcard CORS with credentials enabled.
    allow_credentials=not allow_any_origin,
    allow_methods=["*"],
    allow_headers=["*"],
)

if settings.trusted_hosts != ["*"]:
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.trusted_hosts)

app.include_router(scheduling.router)
app.include_router(bookings.router)
app.include_router(notifications.router)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/ready")
def ready():
    return {
        "status": "ready",
        "payments_configured": bool(booking_engine.gateway.configured),
        "push_configured": push_sender.enabled,
    }
