"""Dependencies de autenticación para FastAPI"""
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Optional, Dict
from shared.auth.jwt_handler import verify_token


security = HTTPBearer(auto_error=False)


def _user_from_payload(payload: Dict) -> Optional[Dict]:
    user_id = payload.get('sub') or payload.get('user_id')
    if not user_id:
        return None
    role = payload.get('role') or payload.get('app_metadata', {}).get('role', 'user')
    return {
        'user_id': str(user_id),
        'email': payload.get('email'),
        'role': role,
    }


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> Dict:
    '''Obtener usuario actual desde token JWT'''
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail='No autenticado',
            headers={'WWW-Authenticate': 'Bearer'},
        )

    payload = await verify_token(credentials.credentials)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail='Token inválido o expirado',
            headers={'WWW-Authenticate': 'Bearer'},
        )

    user = _user_from_payload(payload)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail='Token inválido: falta user_id',
        )
    return user


async def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> Optional[Dict]:
    '''Obtener usuario opcional (para endpoints públicos)'''
    if not credentials:
        return None

    payload = await verify_token(credentials.credentials)
    if payload is None:
        return None
    return _user_from_payload(payload)


async def get_current_admin(
    current_user: Dict = Depends(get_current_user)
) -> Dict:
    '''Verificar que el usuario sea admin'''
    if current_user.get('role') not in ('admin', 'super_admin'):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail='Se requieren permisos de administrador'
        )
    return current_user
