from pydantic import BaseModel, ConfigDict


class AuthLoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    username: str | None = None
    password: str | None = None
