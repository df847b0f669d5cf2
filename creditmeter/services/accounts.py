from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from creditmeter.core.errors import CreditMeterError
from creditmeter.services.audit import record_system_event
from creditmeter.services.credits.ledger import get_credit_ledger
from creditmeter.services.platform_settings import get_configuration, token_limit_settings


logger = logging.getLogger(__name__)


async def on_account_created(session: AsyncSession, account_id: str) -> int:
    # Provisioning must not block signup; a failed bootstrap is logged and reports zero.
    try:
        limits = token_limit_settings(await get_configuration(session))
        result = await get_credit_ledger().initialize(
            session=session,
            account_id=account_id,
            initial_credits=limits.initial_signup_credits,
        )
    except (CreditMeterError, SQLAlchemyError, ValueError) as exc:
        if session.in_transaction():
            await session.rollback()
        logger.error("account_provisioning_failed account_id=%s", account_id, exc_info=exc)
        await record_system_event(
            event_type="accounts.provisioned",
            outcome="failure",
            account_id=account_id,
            resource_type="account_balance",
            resource_id=account_id,
            error_code=type(exc).__name__,
        )
        return 0

    await record_system_event(
        event_type="accounts.provisioned",
        account_id=account_id,
        resource_type="account_balance",
        resource_id=account_id,
        metadata={"initial_credits": result.balance},
    )
    logger.info("account_provisioned account_id=%s balance=%s", account_id, result.balance)
    return result.balance
