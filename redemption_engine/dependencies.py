"""
FastAPI dependencies for the redemption engine
"""
from typing import Generator, Optional
from fastapi import HTTPException, Header, status
from sqlalchemy.orm import Session
from redemption_engine.db.database import SessionLocal
from redemption_engine.config import settings


def get_db() -> Generator[Session, None, None]:
    """Get database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


async def verify_api_key(x_api_key: Optional[str] = Header(None)) -> str:
    """Verify API key for internal endpoints"""
    if not x_api_key or x_api_key != settings.API_KEY:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key"
        )
    return x_api_key
