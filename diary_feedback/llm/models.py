"""Data models for LLM providers."""

from pydantic import BaseModel, ConfigDict, Field


class Completion(BaseModel):
    """Result of a single text-generation call."""

    text: str = Field(..., description="Generated text, stripped")
    model_used: str = Field(..., description="Identifier of the LLM model used")
    provider: str = Field(..., description="LLM provider name (openai, anthropic, zhipu)")
    tokens_used: int | None = Field(default=None, description="Total tokens used (input + output)")
    input_tokens: int = Field(default=0, description="Input tokens used")
    output_tokens: int = Field(default=0, description="Output tokens used")
    cost: float = Field(default=0.0, description="Estimated cost in USD")
    processing_time: float = Field(default=0.0, description="Processing time in seconds")

    model_config = ConfigDict(
        protected_namespaces=(),
        json_schema_extra={
            "example": {
                "text": "Sounds like a lovely afternoon. Keep that energy for tomorrow!",
                "model_used": "gpt-4o",
                "provider": "openai",
                "tokens_used": 412,
                "input_tokens": 350,
                "output_tokens": 62,
                "cost": 0.0015,
                "processing_time": 1.4,
            }
        },
    )
