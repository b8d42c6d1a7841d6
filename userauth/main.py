from __future__ import annotations

from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse

from userauth import deps
from userauth.logging_config import configure_logging
from userauth.routers.auth import router as auth_router
from userauth.routers.users import router as users_router
from userauth.settings import Settings

configure_logging()

APP_VERSION = "1.0.0"

app = FastAPI(title="User Auth Repository", version=APP_VERSION)
app.include_router(users_router)
app.include_router(auth_router)


@app.get("/healthz")
def healthz(settings: Settings = Depends(deps.get_settings_dep)):
    # Avoid secrets: only report which backend and tables are in use.
    return JSONResponse(
        {
            "ok": True,
            "service": "dynamo-user-auth",
            "version": APP_VERSION,
            "backend": settings.backend,
            "user_auth_table": settings.user_auth_table,
        }
    )
