from contextlib import asynccontextmanager
import logging
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from taxcore import __version__
from taxcore.api.v1 import evidence, aggregation, conflicts, calculation, variables, rules
from taxcore.core.config import settings
from taxcore.database import Base, engine
from taxcore.exceptions.base import AppException
from taxcore.exceptions.calculation_exceptions import CalculationException
import taxcore.models  # noqa: F401  registers every table on Base.metadata


logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(
    title = "TaxCore",
    description= "Tax rule aggregation and calculation API",
    version=__version__,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins= settings.CORS_ORIGINS,
    allow_credentials = True,
    allow_methods = ["*"],
    allow_headers = ["*"],
)

app.include_router(evidence.router, prefix="/api/v1")
app.include_router(aggregation.router, prefix="/api/v1")
app.include_router(conflicts.router, prefix="/api/v1")
app.include_router(calculation.router, prefix="/api/v1")
app.include_router(variables.router, prefix="/api/v1")
app.include_router(rules.router, prefix="/api/v1")


@app.exception_handler(CalculationException)
async def calculation_exception_handler(request: Request, exc: CalculationException):
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_payload()
    )


@app.exception_handler(AppException)
async def app_exception_handler(request: Request, exc: AppException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail}
    )


@app.get("/")
def root():
    return {"message": "TaxCore API"}
