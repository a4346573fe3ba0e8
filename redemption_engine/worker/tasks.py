"""
Celery Tasks for async processing
"""
import logging
from typing import Any, Dict, Optional

from celery import shared_task

from redemption_engine.db.database import SessionLocal
from redemption_engine.errors import InfrastructureError

logger = logging.getLogger(__name__)


def get_db_session():
    """Get database session for tasks"""
    return SessionLocal()


@shared_task(bind=True, max_retries=5, default_retry_delay=30)
def open_fraud_case(
    self,
    redemption_id: str,
    score: Dict[str, Any],
    detection_metadata: Optional[Dict[str, Any]] = None
):
    """
    Open a fraud case that could not be created inline.

    Safe to run more than once: a second opening for the same redemption
    returns the existing case.
    """
    from redemption_engine.models.fraud import FraudScore
    from redemption_engine.services.fraud_case_service import fraud_case_service
    from redemption_engine.services.redemption_recorder import redemption_recorder

    db = get_db_session()
    try:
        redemption = redemption_recorder.get_redemption(db, redemption_id)
        if redemption is None:
            logger.error(f"Cannot open fraud case: redemption {redemption_id} not found")
            return {"status": "missing", "redemption_id": redemption_id}

        case = fraud_case_service.open_case(
            db,
            redemption,
            FraudScore.model_validate(score),
            detection_metadata
        )
        logger.info(f"Queued fraud case opened: {case.case_number}")
        return {"status": "opened", "case_number": case.case_number}

    except InfrastructureError as e:
        logger.error(f"Fraud case creation for {redemption_id} failed, retrying: {e}")
        raise self.retry(exc=e)
    finally:
        db.close()
