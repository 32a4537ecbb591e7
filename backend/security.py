from fastapi import HTTPException, Header

from config import ADMIN_API_KEY


def verify_admin(x_api_key: str = Header(default="")):
    if x_api_key != ADMIN_API_KEY:
        raise HTTPException(status_code=401, detail="Invalid admin API key")
