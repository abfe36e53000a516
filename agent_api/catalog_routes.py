from fastapi import APIRouter

from common.enums import AgentAction, LeadStatus, TERMINAL_STATUSES, WAIT_STATUSES
from common.schemas import ActionRuleResponse, CatalogResponse
from common.transitions import ACTION_RULES, available_actions, wire_name


catalog_router = APIRouter(tags=["catalog"])


@catalog_router.get("/catalog", response_model=CatalogResponse)
async def get_catalog():
    """
    Discovery document for agents: canonical statuses and actions, and for
    every action the statuses it may be taken from.
    """
    return CatalogResponse(
        statuses=list(LeadStatus),
        actions=list(AgentAction),
        terminal_statuses=[s for s in LeadStatus if s in TERMINAL_STATUSES],
        wait_statuses=[s for s in LeadStatus if s in WAIT_STATUSES],
        rules={
            action: ActionRuleResponse(
                allowed_from=[s for s in LeadStatus if s in rule.allowed_from],
                target_status=rule.target_status,
                flag=wire_name(rule.flag) if rule.flag else None,
            )
            for action, rule in ACTION_RULES.items()
        },
        available_actions={status: available_actions(status) for status in LeadStatus},
    )


@catalog_router.get("/health")
async def health():
    return {"status": "ok"}
