from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.ledger.domain.ingestion import IngestionService
from app.shared.db.session import get_db


def get_ingestion_service(db: AsyncSession = Depends(get_db)) -> IngestionService:
    return IngestionService(db)
