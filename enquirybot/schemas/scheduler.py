from pydantic import BaseModel


class RuleSummary(BaseModel):
    candidates: int = 0
    sent: int = 0
    skipped: int = 0
    failed: int = 0


class SweepResponse(BaseModel):
    stuck: RuleSummary
    timeout: RuleSummary
    review: RuleSummary
    inactivity: RuleSummary
