from pydantic import AliasChoices, BaseModel, Field, field_validator


class AuthTicketRequest(BaseModel):
    userId: str = Field(validation_alias=AliasChoices("userId", "user_id"), min_length=1)
    channelId: str = Field(validation_alias=AliasChoices("channelId", "channel_id", "websiteId"), min_length=1)

    @field_validator("userId", "channelId")
    @classmethod
    def strip_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value


class AuthTicketResponse(BaseModel):
    success: bool = True
    token: str
    expiresInSeconds: int
