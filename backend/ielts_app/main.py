import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .db import get_db, init_db
from .cleanup import purge_older_than_one_week
from .settings import settings
from .routers import auth
from .routers import speaking
from .routers import writing

logging.basicConfig(
	level=getattr(logging, settings.log_level.upper(), logging.INFO),
	format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Stale live speaking sessions are swept this often
SESSION_SWEEP_SECONDS = 60

app = FastAPI(title="IELTS Practice API")
app.include_router(auth.router)
app.include_router(speaking.router)
app.include_router(writing.router)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
	return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
	errors = exc.errors()
	if errors:
		first = errors[0]
		location = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
		message = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
	else:
		message = "Invalid request"
	return JSONResponse(status_code=400, content={"error": message})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
	logger.exception("Unhandled error on %s %s", request.method, request.url.path)
	return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.get("/info")
def root():
	return {"status": "ok", "ai_configured": bool(settings.openai_api_key)}


def _purge_auth_sessions() -> None:
	db = next(get_db())
	try:
		removed = purge_older_than_one_week(db)
		if removed:
			logger.info("Purged %d idle auth sessions", removed)
	finally:
		db.close()


async def _cleanup_watcher():
	# Auth sessions daily, live speaking sessions every sweep
	elapsed = 0
	while True:
		await asyncio.sleep(SESSION_SWEEP_SECONDS)
		elapsed += SESSION_SWEEP_SECONDS
		try:
			removed = await speaking.purge_idle_sessions(settings.speaking_session_ttl_seconds)
			if removed:
				logger.info("Discarded %d idle speaking sessions", removed)
			if elapsed >= 24 * 60 * 60:
				elapsed = 0
				_purge_auth_sessions()
		except Exception:
			logger.exception("Cleanup pass failed")


@app.on_event("startup")
async def startup_event():
	init_db()
	try:
		_purge_auth_sessions()
	except Exception:
		logger.exception("Startup cleanup failed")
	app.state.cleanup_task = asyncio.create_task(_cleanup_watcher())


@app.on_event("shutdown")
async def shutdown_event():
	task = getattr(app.state, "cleanup_task", None)
	if task is not None:
		task.cancel()
	await speaking.shutdown_sessions()
