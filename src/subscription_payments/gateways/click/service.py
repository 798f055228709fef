"""Click SHOP API state machine.

Click calls Prepare, then Complete, correlated by a prepare id minted here. Both calls
are signed, and both may be retried.
"""

import logging
import threading
import time
from typing import Optional, Dict, Any, Tuple

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ...auth import click_sign_string, verify_signature
from ...config import ClickSettings
from ...database.models import PaymentProvider, Plan, Transaction, TransactionStatus, User, utcnow
from ...money import Money
from ...subscriptions.activator import SubscriptionActivator
from ..base import MAX_TRANSITION_ATTEMPTS, GatewayService, amount_matches, is_valid_identifier
from .models import ClickAction, ClickError, ClickProtocolError, ClickRequest

logger = logging.getLogger(__name__)

CLICK = PaymentProvider.CLICK.value
PENDING = TransactionStatus.PENDING.value
PAID = TransactionStatus.PAID.value
CANCELED = TransactionStatus.CANCELED.value


class PrepareIdSequence:
    """Mints prepare ids: epoch milliseconds, strictly increasing within the process.

    Uniqueness across processes is left to the unique index on ``prepare_id``.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._last = 0

    def next(self) -> int:
        with self._lock:
            value = max(int(time.time() * 1000), self._last + 1)
            self._last = value
            return value


default_prepare_ids = PrepareIdSequence()


class ClickService(GatewayService):
    """Handles Click Prepare/Complete callbacks against the transaction ledger."""

    provider = PaymentProvider.CLICK

    def __init__(
        self,
        session: AsyncSession,
        settings: ClickSettings,
        activator: Optional[SubscriptionActivator] = None,
        prepare_ids: Optional[PrepareIdSequence] = None,
    ):
        super().__init__(session, activator)
        self.settings = settings
        self.prepare_ids = prepare_ids or default_prepare_ids
        self._handlers = {
            ClickAction.PREPARE: self.prepare,
            ClickAction.COMPLETE: self.complete,
        }

    async def handle(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Dispatch one callback and build the flat Click response."""
        try:
            request = ClickRequest.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"Malformed Click request: {e.error_count()} validation error(s)")
            return ClickProtocolError(ClickError.BAD_REQUEST, "Bad request").to_dict()

        echo = {
            "click_trans_id": request.click_trans_id,
            "merchant_trans_id": request.merchant_trans_id,
        }
        try:
            action = ClickAction(request.action)
        except ValueError:
            logger.warning(f"Unknown Click action {request.action}")
            return {**echo, **ClickProtocolError(ClickError.ACTION_NOT_FOUND, "Action not found").to_dict()}

        logger.debug(f"Dispatching Click {action.name} for click_trans_id {request.click_trans_id}")
        try:
            result = await self._handlers[action](request)
        except ClickProtocolError as e:
            logger.info(f"Click {action.name} for {request.click_trans_id} answered with {e.code}: {e.note}")
            return {**echo, **e.to_dict()}
        except Exception:
            logger.exception(f"Click {action.name} for {request.click_trans_id} failed")
            await self.session.rollback()
            return {**echo, **ClickProtocolError(ClickError.BAD_REQUEST, "Internal error").to_dict()}
        return {**echo, **result}

    async def prepare(self, request: ClickRequest) -> Dict[str, Any]:
        """Validate a payment and reserve a prepare id for it."""
        self._verify_signature(request)
        plan_id = request.merchant_trans_id
        user_id = request.param2
        external_id = str(request.click_trans_id)

        if not is_valid_identifier(user_id):
            raise ClickProtocolError(ClickError.USER_OR_PRODUCT_NOT_FOUND, "Invalid userId")
        if not is_valid_identifier(plan_id):
            raise ClickProtocolError(ClickError.USER_OR_PRODUCT_NOT_FOUND, "Product not found")

        if await self.transactions.find_by_pair(user_id, plan_id, [PAID]) is not None:
            raise ClickProtocolError(ClickError.ALREADY_PAID, "Already paid")
        if await self.transactions.find_by_pair(user_id, plan_id, [CANCELED], provider=CLICK) is not None:
            raise ClickProtocolError(ClickError.TRANSACTION_CANCELED, "Cancelled")

        _, plan = await self._resolve(user_id, plan_id, plan_note="Product not found")
        if not amount_matches(request.amount, self.settings.amount_unit, plan.price_money):
            raise ClickProtocolError(ClickError.INVALID_AMOUNT, "Invalid amount")
        amount = Money.from_native(request.amount, self.settings.amount_unit)

        for _ in range(MAX_TRANSITION_ATTEMPTS):
            existing = await self.transactions.get_by_external_id(CLICK, external_id)
            if existing is not None:
                return self._replay_prepare(existing)

            prepare_id = self.prepare_ids.next()
            try:
                await self.transactions.create(
                    provider=CLICK,
                    user_id=user_id,
                    plan_id=plan_id,
                    amount=amount.minor,
                    amount_unit=self.settings.amount_unit,
                    external_id=external_id,
                    prepare_id=prepare_id,
                    sign_time=request.sign_time,
                )
                await self.session.commit()
            except IntegrityError:
                await self.session.rollback()
                logger.info(f"Click prepare for {external_id} collided, retrying")
                continue

            logger.info(f"Click transaction {external_id} prepared with prepare id {prepare_id}")
            return self._success(merchant_prepare_id=prepare_id)

        raise ClickProtocolError(ClickError.BAD_REQUEST, "Could not prepare transaction")

    async def complete(self, request: ClickRequest) -> Dict[str, Any]:
        """Confirm or abandon a prepared payment."""
        self._verify_signature(request)
        plan_id = request.merchant_trans_id
        user_id = request.param2
        external_id = str(request.click_trans_id)

        if not is_valid_identifier(user_id):
            raise ClickProtocolError(ClickError.USER_OR_PRODUCT_NOT_FOUND, "Invalid userId")
        if not is_valid_identifier(plan_id):
            raise ClickProtocolError(ClickError.USER_OR_PRODUCT_NOT_FOUND, "Invalid planId")
        _, plan = await self._resolve(user_id, plan_id, plan_note="Invalid planId")
        price = plan.price_money

        if request.merchant_prepare_id is None:
            raise ClickProtocolError(ClickError.TRANSACTION_NOT_FOUND, "Invalid merchant_prepare_id")

        for _ in range(MAX_TRANSITION_ATTEMPTS):
            transaction = await self.transactions.get_by_prepare_id(
                CLICK, request.merchant_prepare_id, user_id, plan_id
            )
            if transaction is None:
                raise ClickProtocolError(ClickError.TRANSACTION_NOT_FOUND, "Invalid merchant_prepare_id")
            if transaction.external_id != external_id:
                raise ClickProtocolError(ClickError.TRANSACTION_NOT_FOUND, "Transaction not found")
            transaction_id = transaction.id
            prepare_id = transaction.prepare_id

            if transaction.status == PAID:
                await self.fulfill(transaction)
                raise ClickProtocolError(ClickError.ALREADY_PAID, "Already paid")
            if not amount_matches(request.amount, self.settings.amount_unit, price):
                raise ClickProtocolError(ClickError.INVALID_AMOUNT, "Invalid amount")
            if transaction.status == CANCELED:
                raise ClickProtocolError(ClickError.TRANSACTION_CANCELED, "Already cancelled")

            if request.error != 0:
                canceled = await self.transactions.transition(
                    transaction_id, PENDING, CANCELED, cancel_time=utcnow()
                )
                if not canceled:
                    await self.session.rollback()
                    continue
                await self.session.commit()
                logger.warning(f"Click reported failure {request.error} for {external_id}, transaction canceled")
                raise ClickProtocolError(request.error, request.error_note or "Failed")

            try:
                paid = await self.transactions.transition(
                    transaction_id, PENDING, PAID, perform_time=utcnow()
                )
            except IntegrityError:
                await self.session.rollback()
                logger.warning(f"Click transaction {external_id}: plan already paid by another transaction")
                raise ClickProtocolError(ClickError.ALREADY_PAID, "Already paid")
            if not paid:
                await self.session.rollback()
                continue

            await self.session.commit()
            result = self._success(merchant_confirm_id=prepare_id)
            transaction = await self.transactions.get_by_id(transaction_id)
            await self.fulfill(transaction)
            return result

        logger.error(f"Click transaction {external_id} kept changing during Complete")
        raise ClickProtocolError(ClickError.BAD_REQUEST, "Transaction is being processed")

    def _verify_signature(self, request: ClickRequest) -> None:
        try:
            self.settings.require_secret()
        except ValueError as e:
            logger.error(str(e))
            raise ClickProtocolError(ClickError.SIGN_FAILED, "Invalid sign_string")

        prepare_id = request.merchant_prepare_id if request.action == ClickAction.COMPLETE else None
        expected = click_sign_string(
            click_trans_id=request.click_trans_id,
            service_id=request.service_id,
            secret_key=self.settings.secret_key,
            merchant_trans_id=request.merchant_trans_id,
            amount=request.amount,
            action=request.action,
            sign_time=request.sign_time,
            merchant_prepare_id=prepare_id,
        )
        if not verify_signature(request.sign_string, expected):
            logger.warning(f"Invalid Click signature for click_trans_id {request.click_trans_id}")
            raise ClickProtocolError(ClickError.SIGN_FAILED, "Invalid sign_string")

    async def _resolve(self, user_id: str, plan_id: str, plan_note: str) -> Tuple[User, Plan]:
        user = await self.users.get_by_id(user_id)
        if user is None:
            raise ClickProtocolError(ClickError.USER_OR_PRODUCT_NOT_FOUND, "Invalid userId")
        plan = await self.plans.get_by_id(plan_id)
        if plan is None:
            raise ClickProtocolError(ClickError.USER_OR_PRODUCT_NOT_FOUND, plan_note)
        return user, plan

    def _replay_prepare(self, transaction: Transaction) -> Dict[str, Any]:
        if transaction.status == CANCELED:
            raise ClickProtocolError(ClickError.TRANSACTION_CANCELED, "Transaction canceled")
        if transaction.status == PAID:
            raise ClickProtocolError(ClickError.ALREADY_PAID, "Already paid")
        return self._success(merchant_prepare_id=transaction.prepare_id)

    @staticmethod
    def _success(**fields: Any) -> Dict[str, Any]:
        return {**fields, "error": ClickError.SUCCESS.value, "error_note": "Success"}
