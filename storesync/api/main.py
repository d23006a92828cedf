from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from storesync.api.routes import admin
from storesync.core.config import get_settings
from storesync.db.base import Base
from storesync.db.session import get_engine

settings = get_settings()
app = FastAPI(title=f"{settings.app_name} reporting")


@app.on_event("startup")
def startup() -> None:
    Base.metadata.create_all(bind=get_engine())


@app.exception_handler(RequestValidationError)
def request_validation_exception_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"code": "validation_error", "message": "Invalid request", "details": exc.errors()})


app.include_router(admin.router)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}
