import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from filabackup.api.globals import Services, build_services
from filabackup.api.routes import backups
from filabackup.config import settings
from filabackup.errors import BackupError

# Configure logging
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

def create_app(services: Optional[Services] = None) -> FastAPI:
  app = FastAPI(
    title='Filament Inventory Backup Service',
    version='0.1.0',
    description='Cloud backup destinations, snapshot export and restore for the filament inventory.'
  )
  app.state.services = services or build_services(settings)

  # CORS
  app.add_middleware(
    CORSMiddleware,
    allow_origins=['*'],
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*']
  )

  @app.exception_handler(BackupError)
  async def backup_error_handler(request: Request, exc: BackupError):
    if exc.status_code >= 500:
      logger.warning('%s on %s: %s', exc.kind, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

  # Global Exception Handler
  @app.exception_handler(Exception)
  async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global exception: {exc}", exc_info=True)
    return JSONResponse(
      status_code=500,
      content={"message": "Internal Server Error", "kind": "internal"},
    )

  app.include_router(backups.router, tags=['Backups'])

  @app.on_event('startup')
  async def startup_event() -> None:
    logger.info('Backup service started on %s:%s', settings.backend_host, settings.backend_port)

  @app.get('/')
  async def root():
    return {"message": "Filament Inventory Backup Service v0.1.0"}

  return app
