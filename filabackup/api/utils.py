from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, Request
from fastapi.responses import Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from filabackup.api.globals import Services
from filabackup.auth.sessions import Principal
from filabackup.storage.destinations import DestinationConfig

bearer_scheme = HTTPBearer(auto_error=False)

def get_services(request: Request) -> Services:
  return request.app.state.services

def current_principal(
  request: Request,
  credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)
) -> Principal:
  if not credentials or not credentials.credentials:
    raise HTTPException(status_code=401, detail='Not authenticated')
  principal = get_services(request).sessions.resolve(credentials.credentials)
  if not principal:
    raise HTTPException(status_code=401, detail='Session expired, please sign in again')
  return principal

def require_admin(principal: Principal = Depends(current_principal)) -> Principal:
  if not principal.is_admin:
    raise HTTPException(status_code=403, detail='Administrator privileges are required')
  return principal

def serialize_config(config: Optional[DestinationConfig]) -> Optional[Dict[str, Any]]:
  if not config:
    return None
  return {
    'provider': config.destination_id,
    'state': config.state,
    'configured': config.configured,
    'enabled': config.enabled,
    'folderPath': config.folder_path,
    'lastBackup': config.last_backup_at,
    'updatedAt': config.updated_at
  }

def zip_response(filename: str, data: bytes) -> Response:
  return Response(
    content=data,
    media_type='application/zip',
    headers={'Content-Disposition': f'attachment; filename="{filename}"'}
  )
