from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from app.context import resolve_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.database import get_db
from app.crm.errors import ConflictError, CRMError, InvalidArgumentError, NotFoundError
from app.crm.repositories import ConversationSelector, SqlUnitOfWork
from app.crm.schemas import (
    ClientConversionRead,
    ClientCreate,
    ClientRead,
    ClientUpdate,
    CompanyCreate,
    CompanyRead,
    CompanyUpdate,
    ConversationBulkLinkRead,
    ConversationBulkLinkRequest,
    ConversationCreate,
    ConversationLinkRequest,
    ConversationOptionsRead,
    ConversationPage,
    ConversationRead,
    ConversationUpdate,
    JourneyRead,
    LeadCreate,
    LeadPromoteRequest,
    LeadPromotionRead,
    LeadRead,
    LeadStatsRead,
    LeadUpdate,
    OpportunityConvertRequest,
    OpportunityCreate,
    OpportunityRead,
    OpportunityStageRequest,
    OpportunityUpdate,
    StageSummaryRead,
    TaskCreate,
    TaskRead,
    TaskStatsRead,
    TaskUpdate,
    TransitionRead,
)
from app.crm.service import (
    ActorUser,
    ClientService,
    CompanyService,
    ConversationService,
    LeadService,
    OpportunityService,
    TaskService,
)

leads_router = APIRouter(prefix="/api/crm", tags=["crm.leads"])
opportunities_router = APIRouter(prefix="/api/crm", tags=["crm.opportunities"])
pipeline_router = APIRouter(prefix="/api/crm", tags=["crm.pipeline"])
tasks_router = APIRouter(prefix="/api/crm", tags=["crm.tasks"])
conversations_router = APIRouter(prefix="/api/crm", tags=["crm.conversations"])
clients_router = APIRouter(prefix="/api/crm", tags=["crm.clients"])
lead_service = LeadService()
opportunity_service = OpportunityService()
task_service = TaskService()
conversation_service = ConversationService()
client_service = ClientService()
company_service = CompanyService()

_ERROR_STATUS: dict[type[CRMError], int] = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidArgumentError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ConflictError: status.HTTP_409_CONFLICT,
}


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = resolve_correlation_id(request)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _failure(request: Request, exc: HTTPException | CRMError, code: str) -> JSONResponse:
    if isinstance(exc, CRMError):
        return error_response(
            request,
            status_code=_ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST),
            code=exc.code,
            message=exc.message,
            details=exc.details,
        )
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


def get_uow(db: Session = Depends(get_db)) -> SqlUnitOfWork:
    return SqlUnitOfWork(db)


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = resolve_correlation_id(request)
    return ActorUser(
        user_id=auth_user.sub,
        permissions=set(auth_user.roles),
        correlation_id=correlation_id,
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if not user.has_permission(permission):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


@leads_router.get("/leads", response_model=list[LeadRead])
def list_leads(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    source: str | None = Query(default=None),
    search: str | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    uow: SqlUnitOfWork = Depends(get_uow),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadRead] | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return lead_service.list_leads(
            uow,
            filters={"status": status_filter, "source": source, "search": search},
            offset=offset,
            limit=limit,
        )
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_lead_list_failed")


@leads_router.post("/leads", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    uow: SqlUnitOfWork = Depends(get_uow),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.write")
        return lead_service.create_lead(uow, user, dto)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_lead_create_failed")


@leads_router.get("/leads/stats", response_model=LeadStatsRead)
def lead_stats(
    request: Request,
    uow: SqlUnitOfWork = Depends(get_uow),
    user: ActorUser = Depends(get_current_user),
) -> LeadStatsRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return lead_service.lead_stats(uow)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_lead_stats_failed")


@leads_router.get("/leads/{lead_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    uow: SqlUnitOfWork = Depends(get_uow),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return lead_service.get_lead(uow, lead_id)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_lead_get_failed")


@leads_router.patch("/leads/{lead_id}", response_model=LeadRead)
def patch_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadUpdate,
    uow: SqlUnitOfWork = Depends(get_uow),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.write")
        return lead_service.update_lead(uow, user, lead_id, dto)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_lead_update_failed")


@leads_router.delete("/leads/{lead_id}", status_code=status.HTTP_204_NO_CONTENT, response_class=Response)
def delete_lead(
    request: Request,
    lead_id: uuid.UUID,
    uow: SqlUnitOfWork = Depends(get_uow),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "crm.leads.write")
        lead_service.delete_lead(uow, user, lead_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_lead_delete_failed")


@leads_router.post(
    "/leads/{lead_id}/promote",
    response_model=LeadPromotionRead,
    status_code=status.HTTP_201_CREATED,
)
def promote_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadPromoteRequest,
    uow: SqlUnitOfWork = Depends(get_uow),
    user: ActorUser = Depends(get_current_user),
) -> LeadPromotionRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.write")
        require_permission(user, "crm.opportunities.write")
        return lead_service.promote_lead(uow, user, lead_id, dto)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_lead_promote_failed")


@opportunities_router.get("/opportunities", response_model=list[OpportunityRead])
def list_opportunities(
    request: Request,
    stage: str | None = Query(default=None),
    owner_user_id: uuid.UUID | None = Query(default=None),
    lead_id: uuid.UUID | None = Query(default=None),
    search: str | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    uow: SqlUnitOfWork = Depends(get_uow),
    user: ActorUser = Depends(get_current_user),
) -> list[OpportunityRead] | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.read")
        return opportunity_service.list_opportunities(
            uow,
            filters={"stage": stage, "owner_user_id": owner_user_id, "lead_id": lead_id, "search": search},
            offset=offset,
            limit=limit,
        )
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_opportunity_list_failed")


@opportunities_router.post("/opportunities", response_model=TransitionRead, status_code=status.HTTP_201_CREATED)
def create_opportunity(
    request: Request,
    dto: OpportunityCreate,
    uow: SqlUnitOfWork = Depends(get_uow),
    user: ActorUser = Depends(get_current_user),
) -> TransitionRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.write")
        return opportunity_service.create_opportunity(uow, user, dto)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_opportunity_create_failed")


@opportunities_router.get("/opportunities/{opportunity_id}", response_model=OpportunityRead)
def get_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    uow: SqlUnitOfWork = Depends(get_uow),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.read")
        return opportunity_service.get_opportunity(uow, opportunity_id)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_opportunity_get_failed")


@opportunities_router.patch("/opportunities/{opportunity_id}", response_model=OpportunityRead)
def patch_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: OpportunityUpdate,
    uow: SqlUnitOfWork = Depends(get_uow),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.write")
        return opportunity_service.update_opportunity(uow, user, opportunity_id, dto)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_opportunity_update_failed")


@opportunities_router.post("/opportunities/{opportunity_id}/stage", response_model=TransitionRead)
def change_opportunity_stage(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: OpportunityStageRequest,
    uow: SqlUnitOfWork = Depends(get_uow),
    user: ActorUser = Depends(get_current_user),
) -> TransitionRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.write")
        return opportunity_service.change_stage(uow, user, opportunity_id, dto)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_opportunity_stage_failed")


@opportunities_router.post(
    "/opportunities/{opportunity_id}/convert",
    response_model=ClientConversionRead,
    status_code=status.HTTP_201_CREATED,
)
def convert_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: OpportunityConvertRequest,
    uow: SqlUnitOfWork = Depends(get_uow),
    user: ActorUser = Depends(get_current_user),
) -> ClientConversionRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.write")
        return opportunity_service.convert_to_client(uow, user, opportunity_id, dto)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_opportunity_convert_failed")


@pipeline_router.get("/pipeline/stages", response_model=list[StageSummaryRead])
def list_pipeline_stages(
    request: Request,
    uow: SqlUnitOfWork = Depends(get_uow),
    user: ActorUser = Depends(get_current_user),
) -> list[StageSummaryRead] | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.read")
        return opportunity_service.stage_summary(uow)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_pipeline_stages_failed")


@tasks_router.get("/tasks", response_model=list[TaskRead])
def list_tasks(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    priority: str | None = Query(default=None),
    opportunity_id: uuid.UUID | None = Query(default=None),
    lead_id: uuid.UUID | None = Query(default=None),
    client_id: uuid.UUID | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    uow: SqlUnitOfWork = Depends(get_uow),
    user: ActorUser = Depends(get_current_user),
) -> list[TaskRead] | JSONResponse:
    try:
        require_permission(user, "crm.tasks.read")
        return task_service.list_tasks(
            uow,
            filters={
                "status": status_filter,
                "priority": priority,
                "opportunity_id": opportunity_id,
                "lead_id": lead_id,
                "client_id": client_id,
            },
            offset=offset,
            limit=limit,
        )
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_task_list_failed")


@tasks_router.post("/tasks", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
def create_task(
    request: Request,
    dto: TaskCreate,
    uow: SqlUnitOfWork = Depends(get_uow),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        require_permission(user, "crm.tasks.write")
        return task_service.create_task(uow, user, dto)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_task_create_failed")


@tasks_router.get("/tasks/my", response_model=list[TaskRead])
def my_tasks(
    request: Request,
    uow: SqlUnitOfWork = Depends(get_uow),
    user: ActorUser = Depends(get_current_user),
) -> list[TaskRead] | JSONResponse:
    try:
        require_permission(user, "crm.tasks.read")
        return task_service.my_tasks(uow, user)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_task_my_failed")


@tasks_router.get("/tasks/stats", response_model=TaskStatsRead)
def task_stats(
    request: Request,
    uow: SqlUnitOfWork = Depends(get_uow),
    user: ActorUser = Depends(get_current_user),
) -> TaskStatsRead | JSONResponse:
    try:
        require_permission(user, "crm.tasks.read")
        return task_service.task_stats(uow)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_task_stats_failed")


@tasks_router.patch("/tasks/{task_id}", response_model=TaskRead)
def patch_task(
    request: Request,
    task_id: uuid.UUID,
    dto: TaskUpdate,
    uow: SqlUnitOfWork = Depends(get_uow),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        require_permission(user, "crm.tasks.write")
        return task_service.update_task(uow, user, task_id, dto)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_task_update_failed")


@tasks_router.post("/tasks/{task_id}/complete", response_model=TaskRead)
def complete_task(
    request: Request,
    task_id: uuid.UUID,
    uow: SqlUnitOfWork = Depends(get_uow),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        require_permission(user, "crm.tasks.write")
        return task_service.complete_task(uow, user, task_id)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_task_complete_failed")


@tasks_router.delete("/tasks/{task_id}", status_code=status.HTTP_204_NO_CONTENT, response_class=Response)
def delete_task(
    request: Request,
    task_id: uuid.UUID,
    uow: SqlUnitOfWork = Depends(get_uow),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "crm.tasks.write")
        task_service.delete_task(uow, user, task_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_task_delete_failed")


@conversations_router.get("/conversations", response_model=ConversationPage)
def list_conversations(
    request: Request,
    lead_id: uuid.UUID | None = Query(default=None),
    opportunity_id: uuid.UUID | None = Query(default=None),
    client_id: uuid.UUID | None = Query(default=None),
    company_id: uuid.UUID | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    uow: SqlUnitOfWork = Depends(get_uow),
    user: ActorUser = Depends(get_current_user),
) -> ConversationPage | JSONResponse:
    try:
        require_permission(user, "crm.conversations.read")
        selector = ConversationSelector(
            lead_id=lead_id,
            opportunity_id=opportunity_id,
            client_id=client_id,
            company_id=company_id,
        )
        return conversation_service.list_conversations(uow, selector, offset=offset, limit=limit)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_conversation_list_failed")


@conversations_router.post("/conversations", response_model=ConversationRead, status_code=status.HTTP_201_CREATED)
def create_conversation(
    request: Request,
    dto: ConversationCreate,
    uow: SqlUnitOfWork = Depends(get_uow),
    user: ActorUser = Depends(get_current_user),
) -> ConversationRead | JSONResponse:
    try:
        require_permission(user, "crm.conversations.write")
        return conversation_service.create_conversation(uow, user, dto)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_conversation_create_failed")


@conversations_router.get("/conversations/history", response_model=list[ConversationRead])
def conversation_history(
    request: Request,
    lead_id: uuid.UUID | None = Query(default=None),
    opportunity_id: uuid.UUID | None = Query(default=None),
    client_id: uuid.UUID | None = Query(default=None),
    company_id: uuid.UUID | None = Query(default=None),
    uow: SqlUnitOfWork = Depends(get_uow),
    user: ActorUser = Depends(get_current_user),
) -> list[ConversationRead] | JSONResponse:
    try:
        require_permission(user, "crm.conversations.read")
        return conversation_service.history(
            uow,
            lead_id=lead_id,
            opportunity_id=opportunity_id,
            client_id=client_id,
            company_id=company_id,
        )
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_conversation_history_failed")


@conversations_router.get("/conversations/options", response_model=ConversationOptionsRead)
def conversation_options(
    request: Request,
    user: ActorUser = Depends(get_current_user),
) -> ConversationOptionsRead | JSONResponse:
    try:
        require_permission(user, "crm.conversations.read")
        return conversation_service.options()
    except HTTPException as exc:
        return _failure(request, exc, "crm_conversation_options_failed")


@conversations_router.get("/conversations/journey/{entity_type}/{entity_id}", response_model=JourneyRead)
def conversation_journey(
    request: Request,
    entity_type: Literal["lead", "opportunity", "client"],
    entity_id: uuid.UUID,
    uow: SqlUnitOfWork = Depends(get_uow),
    user: ActorUser = Depends(get_current_user),
) -> JourneyRead | JSONResponse:
    try:
        require_permission(user, "crm.conversations.read")
        return conversation_service.journey(uow, entity_type, entity_id)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_conversation_journey_failed")


@conversations_router.post("/conversations/bulk-link", response_model=ConversationBulkLinkRead)
def bulk_link_conversations(
    request: Request,
    dto: ConversationBulkLinkRequest,
    uow: SqlUnitOfWork = Depends(get_uow),
    user: ActorUser = Depends(get_current_user),
) -> ConversationBulkLinkRead | JSONResponse:
    try:
        require_permission(user, "crm.conversations.write")
        return conversation_service.bulk_link(uow, user, dto)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_conversation_bulk_link_failed")


@conversations_router.patch("/conversations/{conversation_id}", response_model=ConversationRead)
def patch_conversation(
    request: Request,
    conversation_id: uuid.UUID,
    dto: ConversationUpdate,
    uow: SqlUnitOfWork = Depends(get_uow),
    user: ActorUser = Depends(get_current_user),
) -> ConversationRead | JSONResponse:
    try:
        require_permission(user, "crm.conversations.write")
        return conversation_service.update_conversation(uow, user, conversation_id, dto)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_conversation_update_failed")


@conversations_router.delete(
    "/conversations/{conversation_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
)
def delete_conversation(
    request: Request,
    conversation_id: uuid.UUID,
    uow: SqlUnitOfWork = Depends(get_uow),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "crm.conversations.write")
        conversation_service.delete_conversation(uow, user, conversation_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_conversation_delete_failed")


@conversations_router.post("/conversations/{conversation_id}/link", response_model=ConversationRead)
def link_conversation(
    request: Request,
    conversation_id: uuid.UUID,
    dto: ConversationLinkRequest,
    uow: SqlUnitOfWork = Depends(get_uow),
    user: ActorUser = Depends(get_current_user),
) -> ConversationRead | JSONResponse:
    try:
        require_permission(user, "crm.conversations.write")
        return conversation_service.link_conversation(uow, user, conversation_id, dto)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_conversation_link_failed")


@clients_router.get("/clients", response_model=list[ClientRead])
def list_clients(
    request: Request,
    company_id: uuid.UUID | None = Query(default=None),
    search: str | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    uow: SqlUnitOfWork = Depends(get_uow),
    user: ActorUser = Depends(get_current_user),
) -> list[ClientRead] | JSONResponse:
    try:
        require_permission(user, "crm.clients.read")
        return client_service.list_clients(
            uow,
            filters={"company_id": company_id, "search": search},
            offset=offset,
            limit=limit,
        )
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_client_list_failed")


@clients_router.post("/clients", response_model=ClientRead, status_code=status.HTTP_201_CREATED)
def create_client(
    request: Request,
    dto: ClientCreate,
    uow: SqlUnitOfWork = Depends(get_uow),
    user: ActorUser = Depends(get_current_user),
) -> ClientRead | JSONResponse:
    try:
        require_permission(user, "crm.clients.write")
        return client_service.create_client(uow, user, dto)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_client_create_failed")


@clients_router.patch("/clients/{client_id}", response_model=ClientRead)
def patch_client(
    request: Request,
    client_id: uuid.UUID,
    dto: ClientUpdate,
    uow: SqlUnitOfWork = Depends(get_uow),
    user: ActorUser = Depends(get_current_user),
) -> ClientRead | JSONResponse:
    try:
        require_permission(user, "crm.clients.write")
        return client_service.update_client(uow, user, client_id, dto)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_client_update_failed")


@clients_router.get("/clients/{client_id}", response_model=ClientRead)
def get_client(
    request: Request,
    client_id: uuid.UUID,
    uow: SqlUnitOfWork = Depends(get_uow),
    user: ActorUser = Depends(get_current_user),
) -> ClientRead | JSONResponse:
    try:
        require_permission(user, "crm.clients.read")
        return client_service.get_client(uow, client_id)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_client_get_failed")


@clients_router.get("/companies", response_model=list[CompanyRead])
def list_companies(
    request: Request,
    search: str | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    uow: SqlUnitOfWork = Depends(get_uow),
    user: ActorUser = Depends(get_current_user),
) -> list[CompanyRead] | JSONResponse:
    try:
        require_permission(user, "crm.clients.read")
        return company_service.list_companies(uow, filters={"search": search}, offset=offset, limit=limit)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_company_list_failed")


@clients_router.post("/companies", response_model=CompanyRead, status_code=status.HTTP_201_CREATED)
def create_company(
    request: Request,
    dto: CompanyCreate,
    uow: SqlUnitOfWork = Depends(get_uow),
    user: ActorUser = Depends(get_current_user),
) -> CompanyRead | JSONResponse:
    try:
        require_permission(user, "crm.clients.write")
        return company_service.create_company(uow, user, dto)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_company_create_failed")


@clients_router.patch("/companies/{company_id}", response_model=CompanyRead)
def patch_company(
    request: Request,
    company_id: uuid.UUID,
    dto: CompanyUpdate,
    uow: SqlUnitOfWork = Depends(get_uow),
    user: ActorUser = Depends(get_current_user),
) -> CompanyRead | JSONResponse:
    try:
        require_permission(user, "crm.clients.write")
        return company_service.update_company(uow, user, company_id, dto)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_company_update_failed")


@clients_router.get("/companies/{company_id}", response_model=CompanyRead)
def get_company(
    request: Request,
    company_id: uuid.UUID,
    uow: SqlUnitOfWork = Depends(get_uow),
    user: ActorUser = Depends(get_current_user),
) -> CompanyRead | JSONResponse:
    try:
        require_permission(user, "crm.clients.read")
        return company_service.get_company(uow, company_id)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_company_get_failed")
