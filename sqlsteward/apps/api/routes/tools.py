from __future__ import annotations

from typing import Any, Awaitable, Callable

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from sqlsteward.apps.api.deps import CallerContext, get_caller, get_services
from sqlsteward.apps.api.response import success_response
from sqlsteward.core.errors import InvalidStateError, ValidationFailedError
from sqlsteward.services.audit import OUTCOME_FAILURE
from sqlsteward.services.runtime import Services
from sqlsteward.services.virtual_paths import ObjectCategory, procedure_path, resolve


router = APIRouter(prefix="/tools", tags=["tools"])


class ToolArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ProcedureArgs(ToolArgs):
    # Either a virtual path or an explicit schema/name pair.
    path: str | None = None
    schema_name: str | None = None
    procedure_name: str | None = None

    def target(self) -> tuple[str, str]:
        if self.path:
            ref = resolve(self.path)
            if ref is None or ref.category != ObjectCategory.STORED_PROCEDURES:
                raise ValidationFailedError("path", f"{self.path} is not a stored procedure path")
            return ref.schema, ref.name
        if self.schema_name and self.procedure_name:
            return self.schema_name, self.procedure_name
        raise ValidationFailedError("path", "Provide path or schema_name and procedure_name")


class CreateDraftArgs(ProcedureArgs):
    definition: str = Field(min_length=1)


class TestDraftArgs(ProcedureArgs):
    params: dict[str, Any] = Field(default_factory=dict)


class RollbackArgs(ProcedureArgs):
    target_version: int | None = Field(default=None, ge=1)


class ExecuteWriteArgs(ToolArgs):
    sql: str = Field(min_length=1)
    params: dict[str, Any] = Field(default_factory=dict)
    transaction_id: str | None = None


class BeginTransactionArgs(ToolArgs):
    isolation_level: str | None = None


class TransactionArgs(ToolArgs):
    transaction_id: str = Field(min_length=1)


Handler = Callable[[Any, Services, CallerContext], Awaitable[Any]]


async def _audited_target(
    args: ProcedureArgs, services: Services, caller: CallerContext, operation: str
) -> tuple[str, str]:
    # Arguments naming no procedure still leave a failed audit event for mutating tools.
    try:
        return args.target()
    except ValidationFailedError as exc:
        await services.audit.emit(
            actor=caller.actor,
            operation=operation,
            target=args.path or ".".join(part for part in (args.schema_name, args.procedure_name) if part) or None,
            outcome=OUTCOME_FAILURE,
            error_code=exc.code,
            detail={"error": exc.message, **exc.details},
        )
        raise


async def _create_sp_draft(args: CreateDraftArgs, services: Services, caller: CallerContext) -> dict[str, Any]:
    schema, name = await _audited_target(args, services, caller, "sp.draft.create")
    draft = await services.lifecycle.create_draft(schema, name, args.definition, actor=caller.actor)
    return {"path": procedure_path(schema, name), **draft.to_dict()}


async def _test_sp_draft(args: TestDraftArgs, services: Services, caller: CallerContext) -> dict[str, Any]:
    schema, name = await _audited_target(args, services, caller, "sp.draft.test")
    result = await services.lifecycle.test_draft(schema, name, args.params, actor=caller.actor)
    return result.to_dict()


async def _deploy_sp(args: ProcedureArgs, services: Services, caller: CallerContext) -> dict[str, Any]:
    schema, name = await _audited_target(args, services, caller, "sp.deploy")
    version = await services.lifecycle.deploy(schema, name, actor=caller.actor)
    return version.to_dict()


async def _rollback_sp(args: RollbackArgs, services: Services, caller: CallerContext) -> dict[str, Any]:
    schema, name = await _audited_target(args, services, caller, "sp.rollback")
    result = await services.lifecycle.rollback(schema, name, args.target_version, actor=caller.actor)
    return result.to_dict()


async def _list_sp_versions(args: ProcedureArgs, services: Services, caller: CallerContext) -> dict[str, Any]:
    schema, name = args.target()
    versions = await services.lifecycle.list_versions(schema, name)
    draft = await services.lifecycle.get_draft(schema, name)
    return {
        "path": procedure_path(schema, name),
        "versions": [version.to_dict() for version in versions],
        "draft": draft.to_dict() if draft else None,
    }


async def _discard_sp_draft(args: ProcedureArgs, services: Services, caller: CallerContext) -> dict[str, Any]:
    schema, name = await _audited_target(args, services, caller, "sp.draft.discard")
    draft = await services.lifecycle.discard_draft(schema, name, actor=caller.actor)
    return draft.to_dict()


async def _execute_query_write(args: ExecuteWriteArgs, services: Services, caller: CallerContext) -> dict[str, Any]:
    result = await services.executor.execute(
        args.sql,
        args.params,
        caller.require_session(),
        actor=caller.actor,
        transaction_id=args.transaction_id,
    )
    return result.to_dict()


async def _begin_transaction(args: BeginTransactionArgs, services: Services, caller: CallerContext) -> dict[str, Any]:
    transaction = await services.transactions.begin(caller.require_session(), args.isolation_level)
    return transaction.to_dict()


def _check_owner(services: Services, caller: CallerContext, transaction_id: str) -> None:
    # Sessions may only finish their own transactions.
    transaction = services.transactions.get(transaction_id)
    if transaction.session_id != caller.require_session():
        raise InvalidStateError(f"Transaction {transaction_id} belongs to another session")


async def _commit_transaction(args: TransactionArgs, services: Services, caller: CallerContext) -> dict[str, Any]:
    _check_owner(services, caller, args.transaction_id)
    transaction = await services.transactions.commit(args.transaction_id)
    return transaction.to_dict()


async def _rollback_transaction(args: TransactionArgs, services: Services, caller: CallerContext) -> dict[str, Any]:
    _check_owner(services, caller, args.transaction_id)
    transaction = await services.transactions.rollback(args.transaction_id)
    return transaction.to_dict()


TOOLS: dict[str, tuple[type[ToolArgs], Handler]] = {
    "create_sp_draft": (CreateDraftArgs, _create_sp_draft),
    "test_sp_draft": (TestDraftArgs, _test_sp_draft),
    "deploy_sp": (ProcedureArgs, _deploy_sp),
    "rollback_sp": (RollbackArgs, _rollback_sp),
    "list_sp_versions": (ProcedureArgs, _list_sp_versions),
    "discard_sp_draft": (ProcedureArgs, _discard_sp_draft),
    "execute_query_write": (ExecuteWriteArgs, _execute_query_write),
    "begin_transaction": (BeginTransactionArgs, _begin_transaction),
    "commit_transaction": (TransactionArgs, _commit_transaction),
    "rollback_transaction": (TransactionArgs, _rollback_transaction),
}


@router.get("")
async def list_tools(request: Request) -> dict:
    # Advertise tool names and argument schemas so agents can build calls.
    tools = [{"name": name, "arguments": model.model_json_schema()} for name, (model, _) in TOOLS.items()]
    return success_response(request=request, data={"tools": tools})


@router.post("/{tool}")
async def call_tool(
    tool: str,
    request: Request,
    arguments: dict[str, Any] = Body(default_factory=dict),
    services: Services = Depends(get_services),
    caller: CallerContext = Depends(get_caller),
) -> dict:
    entry = TOOLS.get(tool)
    if entry is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "TOOL_NOT_FOUND", "message": f"Unknown tool {tool}"},
        )
    model, handler = entry
    try:
        args = model.model_validate(arguments)
    except ValidationError as exc:
        raise HTTPException(
            status_code=422,
            detail={
                "code": "REQUEST_VALIDATION_ERROR",
                "message": f"Invalid arguments for {tool}",
                "errors": exc.errors(include_url=False, include_context=False),
            },
        ) from exc
    data = await handler(args, services, caller)
    return success_response(request=request, data=data)
