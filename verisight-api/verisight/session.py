from pydantic import BaseModel, ConfigDict

UNKNOWN_OPERATOR = "UNKNOWN"


class SessionContext(BaseModel):
    """
    Identity of the operator driving a run.
    The auth layer resolves it; the pipeline only reads `operator_id` for logs and watermarks.
    """
    model_config = ConfigDict(frozen=True)

    operator_id: str = UNKNOWN_OPERATOR

    @classmethod
    def anonymous(cls) -> "SessionContext":
        return cls(operator_id=UNKNOWN_OPERATOR)
