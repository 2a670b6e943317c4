"""
Main Orchestrator for the Expense Chat Gateway

This module ties the components together and defines the end-to-end
chat flow:

    utterance → model → extract → screen → classify/parse → validate
              → rewrite → convert currency → execute → format

DESIGN DECISION: The orchestrator enforces the boundaries:
- Model text only ever reaches the store as a parsed, validated,
  owner-scoped statement
- Every statement gets its own outcome; a later failure never undoes an
  earlier success (there is no cross-statement transaction)
- The response is always written by the gateway, never echoed from the model
- Every step is audited

Multi-turn state lives in the ConversationContext carried by the request.
A ChatFlow holds no per-user state, so one instance serves every user.
"""

from datetime import datetime
from typing import Awaitable, Callable, Optional, Protocol
from uuid import UUID

import structlog

from expense_gateway.agents import AgentReply, SQLGenerationAgent
from expense_gateway.audit import AuditLogger, create_correlation_id
from expense_gateway.config import GatewayConfig, get_settings
from expense_gateway.gateway.classifier import classify
from expense_gateway.gateway.context import (
    abandon,
    begin_attempt,
    category_insert,
    expense_insert,
    is_confirmation_reply,
    is_decline,
    is_proceed,
    pending_from_insert,
    remember_insert,
    resolve_references,
    resolve_target_book,
    transition,
)
from expense_gateway.gateway.currency import CurrencyNormalizer, RateProvider, format_money
from expense_gateway.gateway.errors import (
    DuplicateEntity,
    MissingCategory,
    SecurityViolation,
    ValidationError,
)
from expense_gateway.gateway.executor import StatementExecutor, failed_outcome
from expense_gateway.gateway.extractor import extract_statements
from expense_gateway.gateway.formatter import ResponseFormatter
from expense_gateway.gateway.parser import parse_statement
from expense_gateway.gateway.rewriter import TenantRewriter
from expense_gateway.gateway.screener import screen_statement
from expense_gateway.gateway.validator import StatementValidator
from expense_gateway.models.chat import (
    CategoryResolutionState,
    ChatMessage,
    ChatRequest,
    ChatResponse,
    ConversationContext,
    OutcomeStatus,
    PendingExpense,
    StatementOutcome,
)
from expense_gateway.models.entities import ChatRole, ConversationTurn, UserCatalog
from expense_gateway.models.statements import (
    Entity,
    InsertStatement,
    Statement,
    StatementKind,
)
from expense_gateway.services.rates import ExchangeRateService
from expense_gateway.services.storage import (
    LedgerStoreInterface,
    SQLLedgerStore,
    StorageError,
)


logger = structlog.get_logger(__name__)

State = CategoryResolutionState


class ReplyGenerator(Protocol):
    async def complete(
        self,
        messages: list[ChatMessage],
        catalog: UserCatalog,
        user_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AgentReply:
        ...


class _Turn:
    """Working state of one chat turn. Never outlives the request."""

    def __init__(
        self,
        request: ChatRequest,
        catalog: UserCatalog,
        correlation_id: UUID,
    ):
        self.user_id = request.user_id
        self.utterance = request.message
        self.catalog = catalog
        self.context = request.context
        self.correlation_id = correlation_id
        self.outcomes: list[StatementOutcome] = []
        self.notes: list[str] = []
        self.advisories: list[str] = []
        self.prompt: Optional[str] = None
        self.requires_confirmation = False
        self.raw_reply = ""
        self.model_name: Optional[str] = None


class ChatFlow:
    """
    Orchestrates one chat turn.

    Flow:
    1. Pending expense follow-ups ("yes", "add it now") are handled
       deterministically, without the model
    2. Otherwise the model is asked for SQL
    3. Each extracted statement runs through the gateway pipeline
    4. The formatter writes the response from the outcomes
    5. Both turns are persisted
    """

    def __init__(
        self,
        store: LedgerStoreInterface,
        agent: ReplyGenerator,
        rate_service: Optional[RateProvider] = None,
        config: Optional[GatewayConfig] = None,
        audit_logger: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._config = config or GatewayConfig()
        self._store = store
        self._agent = agent
        self._audit = audit_logger or AuditLogger()
        rate_service = rate_service or ExchangeRateService(
            base_url=self._config.rates_base_url,
            timeout_seconds=self._config.rates_timeout_seconds,
        )
        self._validator = StatementValidator()
        self._normalizer = CurrencyNormalizer(rate_service, self._audit)
        self._executor = StatementExecutor(store, self._config.max_select_rows, clock)
        self._formatter = ResponseFormatter(self._audit)

    def status(self) -> dict[str, str]:
        """Configured model pair."""
        return {
            "status": "ok",
            "primary_model": self._config.primary_model,
            "fallback_model": self._config.fallback_model,
        }

    async def handle(self, request: ChatRequest) -> ChatResponse:
        """
        Handle one chat message.

        Gateway errors never escape: each becomes a statement outcome.
        Storage errors outside statement execution (catalog load) propagate.
        """
        correlation_id = create_correlation_id()
        await self._audit.log_chat_received(
            user_id=request.user_id,
            message=request.message,
            correlation_id=correlation_id,
        )

        catalog = await self._store.load_catalog(request.user_id)
        turn = _Turn(request, catalog, correlation_id)

        handled = await self._follow_up(turn)
        if not handled:
            await self._set_context(turn, begin_attempt(turn.context))
            await self._ask_model(turn, request)

        response = await self._formatter.format(
            turn.raw_reply,
            turn.outcomes,
            turn.catalog,
            user_message=request.message,
            notes=turn.notes,
            advisories=turn.advisories,
            prompt=turn.prompt,
            user_id=turn.user_id,
            correlation_id=correlation_id,
        )
        await self._persist(turn, request.message, response)

        return ChatResponse(
            response=response,
            requires_confirmation=turn.requires_confirmation,
            context=turn.context,
            outcomes=turn.outcomes,
            advisories=turn.advisories,
            model_name=turn.model_name,
        )

    # ------------------------------------------------------------------
    # Follow-ups on a pending expense
    # ------------------------------------------------------------------

    async def _follow_up(self, turn: _Turn) -> bool:
        """Handle a reply to the gateway's own question. False if unrelated."""
        context = turn.context
        pending = context.pending_expense
        if pending is None:
            return False

        if context.state == State.AWAITING_CONFIRMATION:
            if is_confirmation_reply(turn.utterance):
                await self._create_pending_category(turn, pending)
                return True
            if is_decline(turn.utterance):
                await self._set_context(turn, abandon(context))
                turn.notes.append(
                    f"Okay, I won't create '{pending.category_name}'. "
                    f"The {format_money(pending.amount, self._book_currency(turn, pending))} "
                    f"expense was not added."
                )
                return True

        elif context.state == State.READY and pending.category_id is not None:
            if is_proceed(turn.utterance):
                await self._insert_pending_expense(turn, pending)
                return True

        await self._set_context(turn, abandon(context))
        return False

    async def _create_pending_category(self, turn: _Turn, pending: PendingExpense) -> None:
        book = turn.catalog.book_by_id(pending.book_id)
        if book is None:
            await self._set_context(turn, abandon(turn.context))
            turn.notes.append(
                f"The book '{pending.book_name}' is no longer available, so nothing was changed."
            )
            return

        existing = turn.catalog.find_category(book.id, pending.category_name)
        if existing is not None:
            category_id = existing.id
        else:
            outcome = await self._run_statement(turn, 0, category_insert(pending))
            if not outcome.succeeded:
                await self._set_context(turn, abandon(turn.context))
                return
            category_id = outcome.inserted_id

        ready = pending.model_copy(update={"category_id": category_id})
        await self._set_context(turn, transition(turn.context, State.READY, pending_expense=ready))
        turn.prompt = (
            f"Say \"add it now\" to add the "
            f"{format_money(ready.amount, book.currency)} expense to '{ready.category_name}'."
        )

    async def _insert_pending_expense(self, turn: _Turn, pending: PendingExpense) -> None:
        turn.utterance = pending.utterance or turn.utterance
        outcome = await self._run_statement(turn, 0, expense_insert(pending))
        if outcome.succeeded:
            await self._set_context(
                turn,
                transition(turn.context, State.RESOLVING, pending_expense=None),
            )

    def _book_currency(self, turn: _Turn, pending: PendingExpense) -> Optional[str]:
        book = turn.catalog.book_by_id(pending.book_id)
        return book.currency if book else None

    # ------------------------------------------------------------------
    # Model round trip
    # ------------------------------------------------------------------

    async def _ask_model(self, turn: _Turn, request: ChatRequest) -> None:
        history = await self._history(request)
        messages = history + [
            ChatMessage(role=ChatRole.USER, content=resolve_references(request.message, turn.context))
        ]

        reply = await self._agent.complete(
            messages,
            turn.catalog,
            user_id=turn.user_id,
            correlation_id=turn.correlation_id,
        )
        turn.model_name = reply.model_name
        if reply.degraded:
            turn.notes.append(reply.text)
            return

        turn.raw_reply = reply.text
        statements = extract_statements(reply.text)
        await self._audit.log_statement_extracted(
            user_id=turn.user_id,
            count=len(statements),
            model_name=reply.model_name,
            correlation_id=turn.correlation_id,
        )

        await self._run_texts(turn, statements)

    async def _history(self, request: ChatRequest) -> list[ChatMessage]:
        limit = self._config.max_history_turns
        if request.conversation_history:
            return request.conversation_history[-limit:] if limit > 0 else []
        turns = await self._store.recent_turns(request.user_id, limit=limit)
        return [ChatMessage(role=t.role, content=t.content) for t in turns]

    # ------------------------------------------------------------------
    # Statement pipeline
    # ------------------------------------------------------------------

    async def _run_texts(self, turn: _Turn, texts: list[str]) -> None:
        """
        Run the extracted statements through the executor in reply order.
        Each one is prepared only after the previous one has run, so it is
        validated against the catalog the earlier statements left behind.
        """
        async def prepared():
            for index, text in enumerate(texts):
                statement = await self._prepare_text(turn, index, text)
                if statement is not None:
                    yield index, statement

        await self._executor.execute_all(prepared(), on_outcome=self._on_outcome(turn))

    async def _run_statement(self, turn: _Turn, index: int, statement: Statement) -> StatementOutcome:
        """Validate, scope, convert and execute one statement built by the gateway."""
        prepared = await self._prepare(turn, index, statement)
        if prepared is not None:
            await self._executor.execute_all([prepared], on_outcome=self._on_outcome(turn))
        return turn.outcomes[-1]

    async def _prepare_text(self, turn: _Turn, index: int, text: str) -> Optional[Statement]:
        """Screen and parse model text. None when it was refused."""
        try:
            kind = screen_statement(text)
        except SecurityViolation as e:
            await self._audit.log_security_violation(
                user_id=turn.user_id,
                statement=text,
                reason=e.message,
                correlation_id=turn.correlation_id,
            )
            self._record(turn, failed_outcome(index, None, e, kind=classify(text)))
            return None

        try:
            statement = parse_statement(text)
        except ValidationError as e:
            await self._reject(turn, index, None, e, text, kind=kind)
            return None

        return await self._prepare(turn, index, statement)

    async def _prepare(self, turn: _Turn, index: int, statement: Statement) -> Optional[Statement]:
        """Validate, scope and convert. None when the statement was refused or deferred."""
        try:
            self._validator.validate(statement, turn.catalog)
        except MissingCategory as e:
            await self._defer_expense(turn, index, statement, e)
            return None
        except DuplicateEntity as e:
            await self._audit.log_duplicate_rejected(
                user_id=turn.user_id,
                entity=e.entity,
                name=e.name,
                correlation_id=turn.correlation_id,
            )
            self._record(turn, failed_outcome(index, statement, e))
            return None
        except ValidationError as e:
            await self._reject(turn, index, statement, e, statement.source)
            return None

        statement = TenantRewriter(turn.user_id).rewrite(statement)

        conversion = await self._normalizer.normalize(
            statement,
            turn.utterance,
            turn.catalog,
            user_id=turn.user_id,
            correlation_id=turn.correlation_id,
        )
        if conversion.note:
            turn.notes.append(conversion.note)
        if conversion.advisory:
            turn.advisories.append(conversion.advisory)
        return conversion.statement

    def _on_outcome(self, turn: _Turn) -> Callable[[Statement, StatementOutcome], Awaitable[None]]:
        async def record(statement: Statement, outcome: StatementOutcome) -> None:
            if outcome.status == OutcomeStatus.FAILED:
                await self._audit.log_execution_failed(
                    user_id=turn.user_id,
                    index=outcome.index,
                    error_message=outcome.message,
                    correlation_id=turn.correlation_id,
                )
            elif outcome.status == OutcomeStatus.REJECTED:
                await self._audit.log_validation_failed(
                    user_id=turn.user_id,
                    statement=statement.source,
                    field=None,
                    reason=outcome.message,
                    correlation_id=turn.correlation_id,
                    error_code=outcome.error_type or "validation_error",
                )
            else:
                await self._audit.log_statement_executed(
                    user_id=turn.user_id,
                    index=outcome.index,
                    kind=outcome.kind.value,
                    table=outcome.table.value if outcome.table else None,
                    row_count=outcome.row_count,
                    correlation_id=turn.correlation_id,
                )
                await self._after_write(turn, statement, outcome)
            self._record(turn, outcome)

        return record

    async def _after_write(self, turn: _Turn, statement: Statement, outcome: StatementOutcome) -> None:
        if outcome.kind == StatementKind.SELECT:
            return
        if outcome.table in (Entity.BOOKS, Entity.CATEGORIES) and outcome.row_count:
            turn.catalog = await self._store.load_catalog(turn.user_id)
        if isinstance(statement, InsertStatement):
            turn.context = remember_insert(
                turn.context,
                statement.table,
                statement.values,
                outcome.inserted_id,
                turn.catalog,
            )

    async def _defer_expense(
        self,
        turn: _Turn,
        index: int,
        statement: InsertStatement,
        error: MissingCategory,
    ) -> StatementOutcome:
        """
        An expense names a category that does not exist. Set it aside and
        ask before creating the category.
        """
        label = error.label
        book = resolve_target_book(turn.utterance, turn.context, turn.catalog)

        if book is None:
            names = ", ".join(f"'{n}'" for n in turn.catalog.book_names()) or "none yet"
            return await self._reject(
                turn, index, statement,
                MissingCategory(label),
                statement.source,
                note=f"Which book should '{label}' go in? Your books are: {names}.",
            )

        if turn.context.pending_expense is not None:
            return await self._reject(
                turn, index, statement,
                ValidationError(
                    "Only one expense can wait for a new category at a time.",
                    field="categoryId",
                    value=label,
                ),
                statement.source,
            )

        missing = MissingCategory(label, book_id=book.id, book_name=book.name)
        pending = pending_from_insert(statement, label, book, turn.utterance)
        money = format_money(pending.amount, book.currency)
        existing = turn.catalog.find_category(book.id, label)

        if existing is not None:
            ready = pending.model_copy(update={
                "category_id": existing.id,
                "category_name": existing.name,
            })
            await self._set_context(turn, transition(turn.context, State.READY, pending_expense=ready))
            turn.prompt = (
                f"I found the category '{existing.name}' in your '{book.name}' book. "
                f"Say \"add it now\" to add the {money} expense there."
            )
        else:
            needs = transition(turn.context, State.NEEDS_CATEGORY, pending_expense=pending)
            await self._set_context(turn, needs)
            await self._set_context(turn, transition(needs, State.AWAITING_CONFIRMATION))
            turn.requires_confirmation = True
            turn.prompt = (
                f"The category '{label}' doesn't exist in your '{book.name}' book yet. "
                f"Would you like me to create it? The {money} expense will be added once it exists."
            )

        await self._audit.log_validation_failed(
            user_id=turn.user_id,
            statement=statement.source,
            field=missing.field,
            reason=missing.message,
            correlation_id=turn.correlation_id,
            error_code=missing.error_code,
        )
        return self._record(turn, failed_outcome(index, statement, missing))

    async def _reject(
        self,
        turn: _Turn,
        index: int,
        statement: Optional[Statement],
        error: ValidationError,
        source: str,
        kind: Optional[StatementKind] = None,
        note: Optional[str] = None,
    ) -> StatementOutcome:
        await self._audit.log_validation_failed(
            user_id=turn.user_id,
            statement=source,
            field=error.field,
            reason=error.message,
            correlation_id=turn.correlation_id,
            error_code=error.error_code,
        )
        if note:
            turn.notes.append(note)
        return self._record(turn, failed_outcome(index, statement, error, kind=kind))

    def _record(self, turn: _Turn, outcome: StatementOutcome) -> StatementOutcome:
        turn.outcomes.append(outcome)
        return outcome

    # ------------------------------------------------------------------
    # Context and persistence
    # ------------------------------------------------------------------

    async def _set_context(self, turn: _Turn, new_context: ConversationContext) -> None:
        previous = turn.context
        if new_context.state != previous.state:
            pending = new_context.pending_expense or previous.pending_expense
            await self._audit.log_pending_expense_changed(
                user_id=turn.user_id,
                previous_state=previous.state.value,
                new_state=new_context.state.value,
                category_name=pending.category_name if pending else None,
                correlation_id=turn.correlation_id,
            )
        turn.context = new_context

    async def _persist(self, turn: _Turn, message: str, response: str) -> None:
        """Append both turns to the chat log. A failure here never fails the chat."""
        try:
            await self._store.append_turn(
                ConversationTurn(user_id=turn.user_id, role=ChatRole.USER, content=message)
            )
            await self._store.append_turn(
                ConversationTurn(user_id=turn.user_id, role=ChatRole.ASSISTANT, content=response)
            )
        except StorageError as e:
            logger.warning("chat_log_failed", user_id=turn.user_id, error=str(e))


def create_app_components(
    config: Optional[GatewayConfig] = None,
    database_url: Optional[str] = None,
) -> tuple[ChatFlow, SQLLedgerStore]:
    """
    Factory function to create all application components.

    Args:
        config: gateway configuration; frozen from the environment if None
        database_url: overrides DATABASE_URL

    Returns:
        (chat_flow, store)
    """
    settings = get_settings()
    config = config or GatewayConfig.from_settings(settings)
    audit_logger = AuditLogger()

    store = SQLLedgerStore(database_url=database_url)
    agent = SQLGenerationAgent(
        config,
        api_key=settings.gemini.api_key,
        audit_logger=audit_logger,
    )
    rates = ExchangeRateService(
        base_url=config.rates_base_url,
        timeout_seconds=config.rates_timeout_seconds,
    )

    chat_flow = ChatFlow(
        store=store,
        agent=agent,
        rate_service=rates,
        config=config,
        audit_logger=audit_logger,
    )
    return chat_flow, store
