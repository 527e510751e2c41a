# =========================================================
# FILE: /apiforge/schemas/sandbox.py
# =========================================================

from pydantic import BaseModel, Field, field_validator


class ExecRequest(BaseModel):
    command: str = Field(max_length=4000)

    @field_validator("command")
    @classmethod
    def validate_command(cls, value: str):
        if not value or not value.strip():
            raise ValueError("Command cannot be empty")
        return value.strip()


class ExecResponse(BaseModel):
    command: str
    output: str
