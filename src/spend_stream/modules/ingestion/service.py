from __future__ import annotations

import logging
import re
import time
import uuid
from dataclasses import dataclass
from datetime import date
from decimal import InvalidOperation
from typing import Literal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from spend_stream.core.config import settings
from spend_stream.core.logging import (
    bound_context,
    get_logger,
    log_event,
    log_exception,
    monotonic_ms,
)
from spend_stream.core.storage import ObjectStorage
from spend_stream.modules.categories.service import (
    TRAVEL,
    get_or_create_category,
    list_category_names,
)
from spend_stream.modules.expenses.models import Expense
from spend_stream.modules.extraction import ai as extraction_ai
from spend_stream.modules.extraction.coercion import MAX_AMOUNT, ExtractedCandidate
from spend_stream.modules.fx.service import convert_to_base
from spend_stream.modules.ingestion.hashing import line_hash
from spend_stream.modules.ingestion.settings_service import get_ingestion_prompt
from spend_stream.modules.merchants.service import get_merchant_mapping
from spend_stream.modules.statements.models import Statement, StatementStatus
from spend_stream.modules.statements.service import mark_completed, mark_failed

logger = get_logger(__name__)

NO_TRANSACTIONS_MESSAGE = "AI failed to extract any transactions."

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

Outcome = Literal["inserted", "duplicate", "skipped"]


class NoTransactionsExtracted(RuntimeError):
    pass


@dataclass
class IngestionResult:
    statement_id: uuid.UUID
    status: StatementStatus
    extracted: int = 0
    inserted: int = 0
    duplicates: int = 0
    skipped: int = 0


def parse_transaction_date(raw: str | None) -> date | None:
    """Parse ``YYYY-MM-DD`` (a trailing time part is ignored); anything else is None."""
    text = (raw or "").strip()
    text = text.split("T", 1)[0].split(" ", 1)[0].strip()
    if not _ISO_DATE.match(text):
        return None
    try:
        return date.fromisoformat(text)
    except ValueError:
        return None


def normalize_candidate_currency(raw: str | None) -> str:
    code = (raw or "").strip().upper()
    if len(code) == 3 and code.isalpha():
        return code
    return settings.base_currency


def resolve_category_name(
    session: Session, *, user_id: uuid.UUID, candidate: ExtractedCandidate, currency: str
) -> str:
    """Foreign-currency lines default to Travel; a merchant mapping overrides everything."""
    name = TRAVEL if currency != settings.base_currency else candidate.category
    mapping = get_merchant_mapping(session, user_id=user_id, merchant=candidate.merchant)
    if mapping:
        name = mapping.category
    return name


def _line_exists(session: Session, *, user_id: uuid.UUID, digest: str) -> bool:
    return (
        session.scalar(
            select(Expense.id).where(Expense.user_id == user_id, Expense.line_hash == digest)
        )
        is not None
    )


def ingest_candidate(
    session: Session, *, statement: Statement, candidate: ExtractedCandidate
) -> Outcome:
    """Normalize, categorize and insert one candidate; commits its own work."""
    tx_date = parse_transaction_date(candidate.date)
    if tx_date is None:
        log_event(
            logger,
            "ingestion.candidate.skipped",
            level=logging.WARNING,
            reason="unparseable_date",
            variant=candidate.variant.value,
            raw_date=candidate.date or None,
            description=candidate.description or None,
        )
        return "skipped"

    currency = normalize_candidate_currency(candidate.original_currency)
    try:
        conversion = convert_to_base(
            session, amount=candidate.original_amount, currency=currency, on_date=tx_date
        )
    except InvalidOperation:
        conversion = None
    if conversion is None or abs(conversion.amount) >= MAX_AMOUNT:
        log_event(
            logger,
            "ingestion.candidate.skipped",
            level=logging.WARNING,
            reason="invalid_amount",
            variant=candidate.variant.value,
            raw_amount=str(candidate.original_amount),
            currency=currency,
        )
        return "skipped"

    category_name = resolve_category_name(
        session, user_id=statement.user_id, candidate=candidate, currency=currency
    )
    category = get_or_create_category(session, user_id=statement.user_id, name=category_name)

    description = candidate.description.strip()
    digest = line_hash(tx_date.isoformat(), description, conversion.amount)
    if _line_exists(session, user_id=statement.user_id, digest=digest):
        session.commit()
        log_event(logger, "ingestion.candidate.duplicate", line_hash=digest)
        return "duplicate"

    expense = Expense(
        user_id=statement.user_id,
        statement_id=statement.id,
        transaction_date=tx_date,
        description=description,
        merchant=candidate.merchant.strip() or None,
        amount=conversion.amount,
        currency=settings.base_currency,
        original_amount=candidate.original_amount,
        original_currency=currency,
        fx_rate=conversion.rate,
        category_id=category.id,
        category=category.name,
        line_hash=digest,
    )
    try:
        with session.begin_nested():
            session.add(expense)
            session.flush()
    except IntegrityError:
        # Another flow recorded the same line first.
        session.commit()
        log_event(logger, "ingestion.candidate.duplicate", line_hash=digest, race=True)
        return "duplicate"

    expense_id = str(expense.id)
    session.commit()
    log_event(
        logger,
        "ingestion.candidate.inserted",
        expense_id=expense_id,
        variant=candidate.variant.value,
        category=category.name,
        fx_fallback=conversion.fallback or None,
    )
    return "inserted"


def ingest_statement(
    session: Session, *, storage: ObjectStorage, statement_id: uuid.UUID
) -> IngestionResult:
    """Stream a statement through extraction and persist its expenses one by one.

    Ends with the statement ``completed``, or ``failed`` when nothing was
    extracted or anything raised; in the failure case the error is re-raised.
    """
    statement = session.get(Statement, statement_id)
    if not statement:
        raise LookupError(f"Statement not found: {statement_id}")

    result = IngestionResult(statement_id=statement.id, status=statement.status)
    with bound_context(statement_id=str(statement.id)):
        if statement.status != StatementStatus.PROCESSING:
            log_event(
                logger, "ingestion.skip", reason="not_processing", status=statement.status.value
            )
            return result

        start = time.monotonic()
        log_event(logger, "ingestion.start", filename=statement.file_name)
        try:
            body = storage.get(key=statement.storage_key)
            categories = list_category_names(session, user_id=statement.user_id)
            extra = get_ingestion_prompt(session, user_id=statement.user_id)

            for candidate in extraction_ai.stream_statement_candidates(
                body,
                categories=categories,
                file_name=statement.file_name,
                extra_instructions=extra,
            ):
                result.extracted += 1
                outcome = ingest_candidate(session, statement=statement, candidate=candidate)
                if outcome == "inserted":
                    result.inserted += 1
                elif outcome == "duplicate":
                    result.duplicates += 1
                else:
                    result.skipped += 1

            if result.extracted == 0:
                raise NoTransactionsExtracted(NO_TRANSACTIONS_MESSAGE)

            mark_completed(session, statement_id=statement_id, expense_count=result.extracted)
            result.status = StatementStatus.COMPLETED
        except Exception as e:
            session.rollback()
            log_exception(
                logger,
                "ingestion.error",
                extracted=result.extracted,
                inserted=result.inserted,
                duration_ms=monotonic_ms(start),
            )
            mark_failed(
                session,
                statement_id=statement_id,
                error_message=str(e) or type(e).__name__,
                expense_count=result.extracted,
            )
            result.status = StatementStatus.FAILED
            raise

        log_event(
            logger,
            "ingestion.finish",
            extracted=result.extracted,
            inserted=result.inserted,
            duplicates=result.duplicates,
            skipped=result.skipped,
            duration_ms=monotonic_ms(start),
        )
    return result
