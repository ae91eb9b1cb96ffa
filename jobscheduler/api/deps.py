from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from jobscheduler.db.session import get_db_session
from jobscheduler.settings import Settings

# Dependency for DB session
DbSession = Annotated[AsyncSession, Depends(get_db_session)]

def get_settings(request: Request) -> Settings:
    return request.app.state.settings

AppSettings = Annotated[Settings, Depends(get_settings)]
