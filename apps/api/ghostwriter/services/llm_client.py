from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError

from ghostwriter.config import settings


class LLMGenerationError(Exception):
    """Raised when the drafting model fails or its output does not validate."""


class LLMClient:
    """Chat-completions client whose replies must be a JSON object matching a pydantic schema."""

    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        model: str | None = None,
        temperature: float | None = None,
    ) -> None:
        self._client = client
        self.model = model or settings.drafting_model
        self.temperature = settings.drafting_temperature if temperature is None else temperature

    @property
    def client(self) -> AsyncOpenAI:
        # Built on first use so the app starts without credentials
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=settings.openai_api_key,
                base_url=settings.openai_base_url,
            )
        return self._client

    async def complete(self, messages: list[dict], schema: type[BaseModel]) -> BaseModel:
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=self._with_schema_hint(messages, schema),
                response_format={"type": "json_object"},
                temperature=self.temperature,
            )
        except Exception as exc:
            raise LLMGenerationError(f"Drafting request failed: {exc}") from exc

        content = response.choices[0].message.content if response.choices else None
        if not isinstance(content, str) or not content.strip():
            raise LLMGenerationError("Drafting model returned no content")

        try:
            return schema.model_validate_json(content)
        except ValidationError as exc:
            raise LLMGenerationError(f"Drafting output failed schema validation: {exc}") from exc

    @staticmethod
    def _with_schema_hint(messages: list[dict], schema: type[BaseModel]) -> list[dict]:
        """Prepend a JSON-only instruction naming the schema's fields."""
        properties = schema.model_json_schema().get("properties", {})
        fields = "\n".join(
            f'- "{name}": {meta.get("description") or meta.get("type", "value")}'
            for name, meta in properties.items()
        )
        hint = {
            "role": "system",
            "content": (
                "Reply with a single JSON object and nothing else. No markdown fences.\n"
                f"Fields:\n{fields or '- (none)'}"
            ),
        }
        return [hint, *messages]
