from html import escape
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel, Field

from filabackup.api.globals import Services
from filabackup.api.utils import current_principal, get_services, require_admin, serialize_config, zip_response
from filabackup.auth.sessions import Principal
from filabackup.errors import BackupError

router = APIRouter(prefix='/api/cloud-backup')

class TogglePayload(BaseModel):
  enabled: bool

class SettingsPayload(BaseModel):
  folderPath: str = Field(min_length=1)

class ConfigurePayload(BaseModel):
  endpoint: Optional[str] = None
  region: Optional[str] = None
  bucket: Optional[str] = None
  accessKeyId: Optional[str] = None
  secretAccessKey: Optional[str] = None
  url: Optional[str] = None
  username: Optional[str] = None
  password: Optional[str] = None
  basePath: Optional[str] = None
  folderPath: Optional[str] = None

  def to_adapter_payload(self) -> Dict[str, Any]:
    return {
      'endpoint': self.endpoint,
      'region': self.region,
      'bucket': self.bucket,
      'access_key_id': self.accessKeyId,
      'secret_access_key': self.secretAccessKey,
      'url': self.url,
      'username': self.username,
      'password': self.password,
      'base_path': self.basePath,
      'folder_path': self.folderPath
    }

@router.get('/status')
def backup_status(
  principal: Principal = Depends(current_principal),
  services: Services = Depends(get_services)
) -> Dict[str, Any]:
  return services.orchestrator.status(principal.tenant_id)

@router.get('/oauth-available')
def oauth_available(
  principal: Principal = Depends(current_principal),
  services: Services = Depends(get_services)
) -> Dict[str, bool]:
  return services.orchestrator.oauth_availability()

@router.get('/history')
def backup_history(
  provider: Optional[str] = None,
  limit: int = Query(default=50, ge=1, le=500),
  principal: Principal = Depends(current_principal),
  services: Services = Depends(get_services)
) -> Dict[str, Any]:
  records = services.orchestrator.history_for(principal.tenant_id, destination_id=provider, limit=limit)
  return {'history': [record.summary() for record in records]}

@router.get('/download')
def download_user_snapshot(
  principal: Principal = Depends(current_principal),
  services: Services = Depends(get_services)
):
  archive = services.orchestrator.download_snapshot(principal, 'user')
  return zip_response(archive.filename, archive.data)

@router.post('/restore-zip')
def restore_user_snapshot(
  file: UploadFile = File(...),
  confirm: bool = Form(default=False),
  principal: Principal = Depends(current_principal),
  services: Services = Depends(get_services)
) -> Dict[str, Any]:
  data = file.file.read()
  report = services.orchestrator.restore(principal, data, 'user', confirm=confirm)
  return {'success': True, **report.to_dict()}

@router.get('/admin/download')
def download_admin_snapshot(
  principal: Principal = Depends(require_admin),
  services: Services = Depends(get_services)
):
  archive = services.orchestrator.download_snapshot(principal, 'admin')
  return zip_response(archive.filename, archive.data)

@router.post('/admin/restore-zip')
def restore_admin_snapshot(
  file: UploadFile = File(...),
  confirm: bool = Form(default=False),
  principal: Principal = Depends(require_admin),
  services: Services = Depends(get_services)
) -> Dict[str, Any]:
  data = file.file.read()
  report = services.orchestrator.restore(principal, data, 'admin', confirm=confirm)
  return {'success': True, **report.to_dict()}

@router.post('/auth/{provider}')
def start_authorization(
  provider: str,
  principal: Principal = Depends(current_principal),
  services: Services = Depends(get_services)
) -> Dict[str, str]:
  return {'authUrl': services.orchestrator.start_authorization(principal.tenant_id, provider)}

@router.get('/callback/{provider}', response_class=HTMLResponse)
def complete_authorization(
  provider: str,
  state: Optional[str] = None,
  code: Optional[str] = None,
  error: Optional[str] = None,
  error_description: Optional[str] = None,
  services: Services = Depends(get_services)
) -> HTMLResponse:
  try:
    declined = (error_description or error) if error else None
    services.orchestrator.complete_authorization(provider, state, code, declined)
  except BackupError as exc:
    content = f"<html><body><h1>Authorization failed</h1><p>{escape(exc.message)}</p></body></html>"
    return HTMLResponse(content=content, status_code=exc.status_code if exc.status_code < 500 else 400)
  content = (
    "<html><body><h1>Backup destination connected</h1>"
    "<p>You may close this window.</p>"
    "<script>setTimeout(() => window.close(), 1500);</script>"
    "</body></html>"
  )
  return HTMLResponse(content=content)

@router.post('/configure/{provider}')
def configure_destination(
  provider: str,
  payload: ConfigurePayload,
  principal: Principal = Depends(current_principal),
  services: Services = Depends(get_services)
) -> Dict[str, Any]:
  config = services.orchestrator.configure(principal.tenant_id, provider, payload.to_adapter_payload())
  return {'success': True, 'config': serialize_config(config)}

@router.delete('/{provider}')
def disconnect_destination(
  provider: str,
  confirm: bool = False,
  principal: Principal = Depends(current_principal),
  services: Services = Depends(get_services)
) -> Dict[str, Any]:
  removed = services.orchestrator.disconnect(principal.tenant_id, provider, confirm=confirm)
  return {'success': True, 'removed': removed}

@router.patch('/{provider}/toggle')
def toggle_destination(
  provider: str,
  payload: TogglePayload,
  principal: Principal = Depends(current_principal),
  services: Services = Depends(get_services)
) -> Dict[str, Any]:
  config = services.orchestrator.toggle(principal.tenant_id, provider, payload.enabled)
  return {'success': True, 'config': serialize_config(config)}

@router.patch('/{provider}/settings')
def update_destination_settings(
  provider: str,
  payload: SettingsPayload,
  principal: Principal = Depends(current_principal),
  services: Services = Depends(get_services)
) -> Dict[str, Any]:
  config = services.orchestrator.update_settings(principal.tenant_id, provider, payload.folderPath)
  return {'success': True, 'config': serialize_config(config)}

@router.get('/{provider}/config')
def destination_config(
  provider: str,
  principal: Principal = Depends(current_principal),
  services: Services = Depends(get_services)
) -> Dict[str, Any]:
  return services.orchestrator.destination_details(principal.tenant_id, provider)

@router.post('/{provider}/backup')
def backup_now(
  provider: str,
  principal: Principal = Depends(current_principal),
  services: Services = Depends(get_services)
):
  record = services.orchestrator.backup_now(principal.tenant_id, provider)
  if record.status == 'failed':
    return JSONResponse(
      status_code=502,
      content={'message': record.error_message, 'kind': record.error_kind, 'record': record.summary()}
    )
  return {'success': True, 'record': record.summary()}

@router.get('/{provider}/backups/{record_id}/download')
def download_backup(
  provider: str,
  record_id: str,
  principal: Principal = Depends(current_principal),
  services: Services = Depends(get_services)
):
  fetched = services.orchestrator.fetch_backup(principal.tenant_id, provider, record_id)
  return zip_response(fetched.filename, fetched.data)
