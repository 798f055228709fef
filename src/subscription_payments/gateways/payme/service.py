"""Payme merchant API state machine.

Payme drives a transaction through CreateTransaction, PerformTransaction and
optionally CancelTransaction, retrying any call at will. Every handler is idempotent
on the Payme transaction id, and every status change is a conditional update that
re-reads the row when a concurrent call got there first.
"""

import logging
from datetime import timedelta
from typing import Optional, Dict, Any, Tuple

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ...config import PaymeSettings
from ...database.models import PaymentProvider, Plan, Transaction, TransactionStatus, User, utcnow
from ...money import AmountUnit, Money
from ...subscriptions.activator import SubscriptionActivator
from ..base import (
    MAX_TRANSITION_ATTEMPTS,
    GatewayService,
    amount_matches,
    is_valid_identifier,
    to_epoch_ms,
)
from .models import (
    Account,
    CancelReason,
    CancelTransactionParams,
    CheckPerformTransactionParams,
    CreateTransactionParams,
    GetStatementParams,
    PaymeError,
    PaymeMethod,
    PaymeRequest,
    PaymeRPCError,
    TransactionIdParams,
    TransactionState,
)

logger = logging.getLogger(__name__)

PAYME = PaymentProvider.PAYME.value
PENDING = TransactionStatus.PENDING.value
PAID = TransactionStatus.PAID.value
CANCELED = TransactionStatus.CANCELED.value


def error_response(error: PaymeError, rpc_id: Any = None, data: Any = None) -> Dict[str, Any]:
    """Build a JSON-RPC error envelope."""
    return {"error": PaymeRPCError(error, data=data).to_dict(), "id": rpc_id}


class PaymeService(GatewayService):
    """Handles Payme JSON-RPC calls against the transaction ledger."""

    provider = PaymentProvider.PAYME

    def __init__(
        self,
        session: AsyncSession,
        settings: PaymeSettings,
        activator: Optional[SubscriptionActivator] = None,
    ):
        """Initialize the service.

        Args:
            session: Async database session for this request.
            settings: Payme merchant settings.
            activator: Activator applied to transactions once they are paid.
        """
        super().__init__(session, activator)
        self.settings = settings
        self._handlers = {
            PaymeMethod.CHECK_PERFORM_TRANSACTION: self.check_perform_transaction,
            PaymeMethod.CREATE_TRANSACTION: self.create_transaction,
            PaymeMethod.PERFORM_TRANSACTION: self.perform_transaction,
            PaymeMethod.CANCEL_TRANSACTION: self.cancel_transaction,
            PaymeMethod.CHECK_TRANSACTION: self.check_transaction,
            PaymeMethod.GET_STATEMENT: self.get_statement,
        }

    @property
    def timeout(self) -> timedelta:
        return timedelta(minutes=self.settings.transaction_timeout_minutes)

    async def handle(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Dispatch one JSON-RPC call and wrap the outcome in the Payme envelope."""
        rpc_id = payload.get("id") if isinstance(payload, dict) else None
        try:
            request = PaymeRequest.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"Malformed Payme request: {e.error_count()} validation error(s)")
            return error_response(PaymeError.INVALID_REQUEST, rpc_id)

        try:
            method = PaymeMethod(request.method)
        except ValueError:
            logger.warning(f"Unknown Payme method {request.method!r}")
            return error_response(PaymeError.METHOD_NOT_FOUND, rpc_id, data=request.method)

        logger.debug(f"Dispatching Payme {method.value} (rpc id {rpc_id})")
        try:
            result = await self._handlers[method](request.params)
        except PaymeRPCError as e:
            logger.info(f"Payme {method.value} rejected with {e.code}")
            return {"error": e.to_dict(), "id": rpc_id}
        except ValidationError:
            logger.warning(f"Invalid params for Payme {method.value}")
            return error_response(PaymeError.INVALID_REQUEST, rpc_id)
        except Exception:
            logger.exception(f"Payme {method.value} failed")
            await self.session.rollback()
            return error_response(PaymeError.INTERNAL_ERROR, rpc_id)
        return {"result": result, "id": rpc_id}

    async def check_perform_transaction(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Tell Payme whether the account may pay ``amount``. Never mutates."""
        request = CheckPerformTransactionParams.model_validate(params)
        plan_id = request.account.plan_id
        user_id = request.account.user_id

        if not is_valid_identifier(plan_id) or not is_valid_identifier(user_id):
            raise PaymeRPCError(PaymeError.PRODUCT_OR_USER_NOT_FOUND)

        plan = await self.plans.get_by_id(plan_id)
        user = await self.users.get_by_id(user_id)
        if plan is None or user is None:
            raise PaymeRPCError(PaymeError.PRODUCT_OR_USER_NOT_FOUND)

        if not amount_matches(request.amount, self.settings.amount_unit, plan.price_money):
            raise PaymeRPCError(PaymeError.INVALID_AMOUNT)
        return {"allow": True}

    async def create_transaction(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Open a pending transaction, or replay the one already opened for this id."""
        request = CreateTransactionParams.model_validate(params)
        user, plan = await self._resolve_account(request.account)
        if not amount_matches(request.amount, self.settings.amount_unit, plan.price_money):
            raise PaymeRPCError(PaymeError.INVALID_AMOUNT)
        user_id, plan_id = user.id, plan.id

        existing = await self.transactions.get_by_external_id(PAYME, request.id)
        if existing is not None:
            return await self._replay_create(existing)

        await self._guard_pair(user_id, plan_id)
        await self.check_perform_transaction(params)

        amount = Money.from_native(request.amount, self.settings.amount_unit)
        try:
            transaction = await self.transactions.create(
                provider=PAYME,
                user_id=user_id,
                plan_id=plan_id,
                amount=amount.minor,
                amount_unit=self.settings.amount_unit,
                external_id=request.id,
                state=TransactionState.PENDING.value,
                provider_time=request.time,
            )
            result = self._create_result(transaction)
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            logger.info(f"Concurrent CreateTransaction for {request.id}, re-reading")
            existing = await self.transactions.get_by_external_id(PAYME, request.id)
            if existing is not None:
                return await self._replay_create(existing)
            raise PaymeRPCError(PaymeError.TRANSACTION_IN_PROCESS)

        logger.info(f"Payme transaction {request.id} created for user {user_id}, plan {plan_id}")
        return result

    async def perform_transaction(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Capture a pending transaction and extend the subscription."""
        request = TransactionIdParams.model_validate(params)

        for _ in range(MAX_TRANSITION_ATTEMPTS):
            transaction = await self._get_transaction(request.id)
            transaction_id = transaction.id

            if transaction.status == PAID:
                result = self._perform_result(transaction)
                await self.fulfill(transaction)
                return result
            if transaction.status != PENDING:
                raise PaymeRPCError(PaymeError.CANT_DO_OPERATION)

            if transaction.is_expired(self.timeout):
                if await self._expire(transaction):
                    raise self._timeout_error()
                continue

            try:
                performed = await self.transactions.transition(
                    transaction_id,
                    PENDING,
                    PAID,
                    state=TransactionState.PAID.value,
                    perform_time=utcnow(),
                )
            except IntegrityError:
                await self.session.rollback()
                logger.warning(f"Payme transaction {request.id}: plan already paid by another transaction")
                raise PaymeRPCError(PaymeError.CANT_DO_OPERATION)

            if not performed:
                await self.session.rollback()
                continue

            await self.session.commit()
            transaction = await self.transactions.get_by_id(transaction_id)
            result = self._perform_result(transaction)
            await self.fulfill(transaction)
            return result

        logger.error(f"Payme transaction {request.id} kept changing during PerformTransaction")
        raise PaymeRPCError(PaymeError.CANT_DO_OPERATION)

    async def cancel_transaction(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Cancel a pending or paid transaction. Idempotent once canceled."""
        request = CancelTransactionParams.model_validate(params)

        for _ in range(MAX_TRANSITION_ATTEMPTS):
            transaction = await self._get_transaction(request.id)
            transaction_id = transaction.id

            if transaction.status == CANCELED:
                return self._cancel_result(transaction)
            if transaction.status == PENDING:
                new_state = TransactionState.PENDING_CANCELED
            elif transaction.status == PAID:
                new_state = TransactionState.PAID_CANCELED
            else:
                raise PaymeRPCError(PaymeError.CANT_DO_OPERATION)

            canceled = await self.transactions.transition(
                transaction_id,
                transaction.status,
                CANCELED,
                state=new_state.value,
                reason=request.reason,
                cancel_time=utcnow(),
            )
            if not canceled:
                await self.session.rollback()
                continue

            await self.session.commit()
            if new_state == TransactionState.PAID_CANCELED:
                # Refunds do not revoke the subscription window
                logger.warning(f"Paid Payme transaction {request.id} canceled (reason {request.reason})")
            transaction = await self.transactions.get_by_id(transaction_id)
            return self._cancel_result(transaction)

        logger.error(f"Payme transaction {request.id} kept changing during CancelTransaction")
        raise PaymeRPCError(PaymeError.CANT_DO_OPERATION)

    async def check_transaction(self, params: Dict[str, Any]) -> Dict[str, Any]:
        request = TransactionIdParams.model_validate(params)
        transaction = await self._get_transaction(request.id)
        return {
            "create_time": to_epoch_ms(transaction.created_at),
            "perform_time": to_epoch_ms(transaction.perform_time) or 0,
            "cancel_time": to_epoch_ms(transaction.cancel_time) or 0,
            "transaction": transaction.id,
            "state": transaction.state,
            "reason": transaction.reason,
        }

    async def get_statement(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """List Payme transactions created by Payme within [from, to]."""
        request = GetStatementParams.model_validate(params)
        transactions = await self.transactions.list_by_provider_time(PAYME, request.from_, request.to)
        return {
            "transactions": [
                {
                    "id": transaction.external_id,
                    "time": transaction.provider_time,
                    "amount": transaction.amount_money.to_native(AmountUnit(transaction.amount_unit)),
                    "account": {
                        "plan_id": transaction.plan_id,
                        "user_id": transaction.user_id,
                    },
                    "create_time": to_epoch_ms(transaction.created_at),
                    "perform_time": to_epoch_ms(transaction.perform_time) or 0,
                    "cancel_time": to_epoch_ms(transaction.cancel_time) or 0,
                    "transaction": transaction.id,
                    "state": transaction.state,
                    "reason": transaction.reason,
                }
                for transaction in transactions
            ]
        }

    async def _resolve_account(self, account: Account) -> Tuple[User, Plan]:
        if not is_valid_identifier(account.plan_id):
            raise PaymeRPCError(PaymeError.PRODUCT_NOT_FOUND, data="plan_id")
        if not is_valid_identifier(account.user_id):
            raise PaymeRPCError(PaymeError.USER_NOT_FOUND, data="user_id")

        plan = await self.plans.get_by_id(account.plan_id)
        user = await self.users.get_by_id(account.user_id)
        if user is None:
            raise PaymeRPCError(PaymeError.USER_NOT_FOUND, data="user_id")
        if plan is None:
            raise PaymeRPCError(PaymeError.PRODUCT_NOT_FOUND, data="plan_id")
        return user, plan

    async def _get_transaction(self, external_id: str) -> Transaction:
        transaction = await self.transactions.get_by_external_id(PAYME, external_id)
        if transaction is None:
            raise PaymeRPCError(PaymeError.TRANSACTION_NOT_FOUND)
        return transaction

    async def _replay_create(self, transaction: Transaction) -> Dict[str, Any]:
        if transaction.status == PENDING:
            if not transaction.is_expired(self.timeout):
                return self._create_result(transaction)
            external_id = transaction.external_id
            if not await self._expire(transaction):
                transaction = await self._get_transaction(external_id)
                return await self._replay_create(transaction)

        if transaction.status == PENDING or (
            transaction.status == CANCELED and transaction.reason == CancelReason.TIMEOUT.value
        ):
            raise self._timeout_error()
        raise PaymeRPCError(PaymeError.CANT_DO_OPERATION)

    async def _guard_pair(self, user_id: str, plan_id: str) -> None:
        pending = await self.transactions.find_by_pair(user_id, plan_id, [PENDING], provider=PAYME)
        if pending is not None:
            if not pending.is_expired(self.timeout):
                raise PaymeRPCError(PaymeError.TRANSACTION_IN_PROCESS)
            await self._expire(pending)

        if await self.transactions.find_by_pair(user_id, plan_id, [PAID]) is not None:
            raise PaymeRPCError(PaymeError.ALREADY_PAID)

    async def _expire(self, transaction: Transaction) -> bool:
        """Cancel an expired pending transaction for timeout. Returns True if this call did it."""
        transaction_id = transaction.id
        external_id = transaction.external_id
        expired = await self.transactions.transition(
            transaction_id,
            PENDING,
            CANCELED,
            state=TransactionState.PENDING_CANCELED.value,
            reason=CancelReason.TIMEOUT.value,
            cancel_time=utcnow(),
        )
        if expired:
            await self.session.commit()
            logger.warning(f"Payme transaction {external_id} expired and was canceled")
        else:
            await self.session.rollback()
        return expired

    @staticmethod
    def _timeout_error() -> PaymeRPCError:
        return PaymeRPCError(
            PaymeError.CANT_DO_OPERATION,
            state=TransactionState.PENDING_CANCELED.value,
            reason=CancelReason.TIMEOUT.value,
        )

    @staticmethod
    def _create_result(transaction: Transaction) -> Dict[str, Any]:
        return {
            "create_time": to_epoch_ms(transaction.created_at),
            "transaction": transaction.id,
            "state": transaction.state,
        }

    @staticmethod
    def _perform_result(transaction: Transaction) -> Dict[str, Any]:
        return {
            "transaction": transaction.id,
            "perform_time": to_epoch_ms(transaction.perform_time),
            "state": transaction.state,
        }

    @staticmethod
    def _cancel_result(transaction: Transaction) -> Dict[str, Any]:
        return {
            "transaction": transaction.id,
            "cancel_time": to_epoch_ms(transaction.cancel_time),
            "state": transaction.state,
        }
