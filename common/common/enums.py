from enum import Enum


class LeadStatus(str, Enum):
    """Canonical outreach funnel statuses, in funnel order."""
    NEW = "NEW"
    CONTACTED_1 = "CONTACTED_1"
    WAITING_D2 = "WAITING_D2"
    CALL_DUE = "CALL_DUE"
    CALLED = "CALLED"
    WAITING_D1 = "WAITING_D1"
    CONTACTED_2 = "CONTACTED_2"
    WA_VOICE_DUE = "WA_VOICE_DUE"
    REPLIED = "REPLIED"
    QUALIFIED = "QUALIFIED"
    NOT_INTERESTED = "NOT_INTERESTED"
    COMPLETED = "COMPLETED"


class AgentAction(str, Enum):
    """Actions an external agent may record against a lead."""
    SEND_EMAIL_1 = "send_email_1"
    SEND_DM_LI_1 = "send_dm_li_1"
    SEND_DM_FB_1 = "send_dm_fb_1"
    SEND_DM_IG_1 = "send_dm_ig_1"
    CALL_DONE = "call_done"
    SEND_EMAIL_2 = "send_email_2"
    SEND_DM_2 = "send_dm_2"
    SEND_WA_VOICE = "send_wa_voice"
    MARK_REPLIED = "mark_replied"
    MARK_QUALIFIED = "mark_qualified"
    MARK_NOT_INTERESTED = "mark_not_interested"


class AuditSource(str, Enum):
    """Origin of a recorded lead mutation."""
    API = "api"
    AGENT = "agent"
    SCHEDULER = "scheduler"


TERMINAL_STATUSES = frozenset({
    LeadStatus.QUALIFIED,
    LeadStatus.NOT_INTERESTED,
    LeadStatus.COMPLETED,
})

# Pre-reply funnel positions, a reply may interrupt any of them
ACTIVE_STATUSES = (
    LeadStatus.NEW,
    LeadStatus.CONTACTED_1,
    LeadStatus.WAITING_D2,
    LeadStatus.CALL_DUE,
    LeadStatus.CALLED,
    LeadStatus.WAITING_D1,
    LeadStatus.CONTACTED_2,
    LeadStatus.WA_VOICE_DUE,
)

# Statuses carrying a due timer the scheduler sweeps
WAIT_STATUSES = frozenset({
    LeadStatus.WAITING_D2,
    LeadStatus.WAITING_D1,
})
