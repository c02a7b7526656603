"""
Celery Tasks
Background bookkeeping for settled bills.
"""

import asyncio
import logging
import time
from typing import Optional

from tablebill.celery_worker import celery_app
from tablebill.core.config import get_settings
from tablebill.services.billing import BillingResult
from tablebill.services.ledger import SettlementLedger

logger = logging.getLogger(__name__)

# Broker publish retries; a dead broker fails fast instead of blocking
ENQUEUE_RETRY_POLICY = {
    "max_retries": 2,
    "interval_start": 0,
    "interval_step": 0.5,
    "interval_max": 1,
}


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    autoretry_for=(Exception,),
    retry_backoff=True,
    ignore_result=True,
)
def record_settlement(self, settlement: dict) -> dict:
    """
    Append a settlement to the Excel ledger.

    Safe to retry: orders already in the ledger are skipped.

    Args:
        settlement: Output of ``settlement_payload``

    Returns:
        dict: Result of the ledger write
    """
    task_id = self.request.id
    label = f"{settlement.get('operation')} {settlement.get('target')}"

    logger.info(f"Task {task_id}: recording {label}")
    start_time = time.time()

    result = SettlementLedger.from_settings().record(settlement)

    elapsed = round(time.time() - start_time, 3)
    result["task_id"] = task_id
    result["processing_time_seconds"] = elapsed

    if not result["success"]:
        # Lock timeout: let Celery retry later
        raise RuntimeError(f"Settlement {label} not recorded: {result['message']}")

    logger.info(f"Task {task_id}: {label} done in {elapsed}s ({result['message']})")
    return result


def settlement_payload(result: BillingResult) -> dict:
    """JSON-safe description of the orders a pay operation settled."""
    return {
        "operation": result.operation.value,
        "restaurant_id": result.restaurant_id,
        "target": result.target,
        "orders": [order.model_dump(mode="json") for order in result.paid_orders],
    }


async def enqueue_settlement(result: BillingResult, timeout: Optional[float] = None) -> None:
    """
    Settlement sink for the billing service.

    Publishing talks to the broker synchronously, so it runs in a thread.
    The result backend is never touched and publishing gives up after
    ``timeout`` seconds, raising ``asyncio.TimeoutError``.
    """
    if timeout is None:
        timeout = get_settings().ledger_enqueue_timeout
    await asyncio.wait_for(
        asyncio.to_thread(
            record_settlement.apply_async,
            args=(settlement_payload(result),),
            ignore_result=True,
            retry=True,
            retry_policy=ENQUEUE_RETRY_POLICY,
        ),
        timeout=timeout,
    )
    logger.debug(f"Queued settlement for {result.operation.value} {result.target}")
