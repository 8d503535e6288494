from pydantic import BaseModel


class WebhookAcceptedResponse(BaseModel):
    success: bool = True
    jobId: str
