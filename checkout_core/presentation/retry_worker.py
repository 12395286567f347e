import asyncio
import logging

from checkout_core.database import AsyncSessionLocal
from checkout_core.application.automation import AutomationRule, load_rules
from checkout_core.application.payment_confirmation import PaymentConfirmationEngine
from checkout_core.domain.exceptions import DomainException
from checkout_core.presentation.api import build_confirmation_engine
from checkout_core.config import settings

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


async def process_due_confirmations(engine: PaymentConfirmationEngine, rules: list[AutomationRule]) -> int:
    """Re-run automation for every confirmation whose retry time has passed.

    Returns how many of them were confirmed.
    """
    confirmed = 0
    for confirmation in await engine.confirmations_requiring_retry():
        try:
            outcome = await engine.process_automated(confirmation.id, rules)
        except DomainException as e:
            # resolved by someone else since the query
            logger.warning(f"Skipping confirmation {confirmation.id}: {e}")
            continue
        if outcome.automated:
            confirmed += 1
    return confirmed


async def retry_worker(rules: list[AutomationRule]):
    """Worker that retries automated payment confirmations"""
    logger.info(f"Retry worker started with {len(rules)} automation rule(s)")

    while True:
        try:
            engine = build_confirmation_engine(AsyncSessionLocal)
            confirmed = await process_due_confirmations(engine, rules)
            if confirmed:
                logger.info(f"Retry worker confirmed {confirmed} payment(s)")

            await asyncio.sleep(settings.RETRY_WORKER_INTERVAL_SECONDS)

        except Exception as e:
            logger.error(f"Retry worker iteration failed: {e}", exc_info=True)
            await asyncio.sleep(settings.RETRY_WORKER_INTERVAL_SECONDS)


async def main():
    rules = load_rules(settings.AUTOMATION_RULES_FILE) if settings.AUTOMATION_RULES_FILE else []
    await retry_worker(rules)


if __name__ == "__main__":
    asyncio.run(main())
