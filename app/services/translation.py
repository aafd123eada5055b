"""
Listing Translation Service - Multi-language listings, one credit per language.
"""

from collections.abc import Sequence
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.exceptions import MalformedResponseError
from app.models.api import FeatureKey, TranslatedListing
from app.models.domain import LateResultHandler, MeteredResult
from app.services.ai_gateway import SERVICE, AIGatewayClient
from app.services.metering import MeteringService

logger = get_logger(__name__)

LANGUAGE_NAMES = {
    "fr": "French",
    "de": "German",
    "nl": "Dutch",
    "es": "Spanish",
    "it": "Italian",
    "pt": "Portuguese",
    "pl": "Polish",
}

SYSTEM_PROMPT = (
    "You are a professional multilingual translator for e-commerce listings. "
    "Always respond with valid JSON only."
)


def build_prompt(title: str, description: str, tags: Sequence[str], languages: Sequence[str]) -> str:
    """Translation prompt for the gateway. Unknown codes are passed through as names."""
    names = ", ".join(LANGUAGE_NAMES.get(code, code) for code in languages)
    tag_line = f"ORIGINAL TAGS: {', '.join(tags)}" if tags else ""
    example = ",\n".join(
        f'  "{code}": {{ "title": "...", "description": "...", "tags": ["..."] }}'
        for code in languages[:2]
    )
    return f"""You are a professional translator specialising in e-commerce product listings for Vinted. Translate the following Vinted listing into {names}.

IMPORTANT RULES:
- Keep brand names, model names, and proper nouns UNCHANGED
- Adapt sizing conventions where relevant (e.g. UK sizes)
- Use natural, buyer-friendly language that sounds native (not robotic)
- Optimise for local Vinted search keywords in each language
- Keep the same structure and formatting as the original

ORIGINAL TITLE:
{title}

ORIGINAL DESCRIPTION:
{description}

{tag_line}

Return a JSON object with language codes as keys. Each value should have "title", "description", and "tags" (array). Example:
{{
{example}
}}
Return ONLY the JSON object, no markdown or other text."""


class ListingTranslationService:
    """Translates a listing into several languages as one metered operation."""

    def __init__(self, session: AsyncSession, gateway: AIGatewayClient | None = None) -> None:
        self.metering = MeteringService(session)
        self.gateway = gateway or AIGatewayClient()

    async def translate(
        self,
        account_id: UUID,
        title: str,
        description: str,
        tags: Sequence[str] = (),
        languages: Sequence[str] | None = None,
        on_late_result: LateResultHandler | None = None,
    ) -> MeteredResult[dict[str, TranslatedListing]]:
        """
        Translate a listing, debiting one credit per distinct requested language.

        on_late_result receives translations that arrive after the gateway
        timeout or a client disconnect, for the caller to store; they are
        never billed.

        Raises:
            ExternalServiceError: Gateway failed; nothing was debited
        """
        targets = target_languages(languages)
        if not targets:
            raise ValueError("At least one target language is required")

        async def work() -> dict[str, TranslatedListing]:
            content = await self.gateway.complete_json(
                SYSTEM_PROMPT, build_prompt(title, description, tags, targets)
            )
            return _extract_translations(content, targets)

        result = await self.metering.run(
            account_id,
            FeatureKey.TRANSLATE_LISTING,
            work,
            units=len(targets),
            timeout=settings.ai_timeout_seconds,
            on_late_result=on_late_result,
        )
        if result.performed:
            logger.info(
                "listing_translated",
                account_id=str(account_id),
                languages=targets,
                credits_debited=result.debited,
            )
        return result


def target_languages(languages: Sequence[str] | None) -> list[str]:
    """Lowercased, distinct codes in request order; the configured defaults when none given."""
    codes = languages if languages else settings.translation_languages
    return list(dict.fromkeys(code.strip().lower() for code in codes if code.strip()))


def _extract_translations(
    content: dict[str, object], languages: Sequence[str]
) -> dict[str, TranslatedListing]:
    """Keep the requested languages only; a missing one means the reply is unusable."""
    translations: dict[str, TranslatedListing] = {}
    for code in languages:
        entry = content.get(code)
        if not isinstance(entry, dict):
            raise MalformedResponseError(SERVICE, f"no translation for '{code}'")
        try:
            translations[code] = TranslatedListing.model_validate(entry)
        except ValueError as e:
            raise MalformedResponseError(SERVICE, f"bad translation for '{code}'") from e
    return translations
