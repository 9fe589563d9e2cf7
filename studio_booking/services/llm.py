import json
import logging
from datetime import timedelta

from openai import APIError, AsyncOpenAI

from studio_booking.core.exceptions import ExternalServiceError
from studio_booking.services.time_normalizer import TimeNormalizer

logger = logging.getLogger(__name__)


class ExtractionClient:
    """
    Pulls booking fields out of a customer's free-text message.

    The returned dict is untrusted; callers validate it with
    ExtractionRecord.from_untrusted before using it.
    """

    def __init__(self, client: AsyncOpenAI, model: str, normalizer: TimeNormalizer):
        self.client = client
        self.model = model
        self.normalizer = normalizer

    async def call_json(
        self,
        system_prompt: str,
        user_message: str,
        temperature: float = 0.0,
    ) -> dict:
        """
        Call OpenAI API and parse the response as JSON.

        Args:
            system_prompt: Instructions that tell AI to respond in JSON
            user_message: The message to analyze
            temperature: Use 0 for deterministic extraction

        Returns:
            Parsed JSON as a dictionary
        """
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_message}
                ],
                temperature=temperature,
                response_format={"type": "json_object"}
            )
        except APIError as e:
            raise ExternalServiceError("Sorry, I couldn't read that message right now. Please try again shortly.") from e

        content = response.choices[0].message.content

        try:
            return json.loads(content or "")
        except json.JSONDecodeError:
            logger.warning("Extraction returned invalid JSON", extra={"reason": (content or "")[:200]})
            return {"error": "Failed to parse JSON", "raw": content}

    async def extract(self, message: str, package_names: list[str]) -> dict:
        """Extract booking fields and the sub-intent from one message."""
        system_prompt = f"""You are an entity extractor for a photo studio's booking assistant.

{self._date_context()}

Packages offered by the studio: {package_names}

Extract only what the customer actually said in this message. Use null for
anything not mentioned.

Respond with JSON only:
{{
    "service": "package name if mentioned, or null",
    "date": "date if mentioned (YYYY-MM-DD based on the dates above), or null",
    "time": "time if mentioned (HH:MM 24hr format), or null",
    "name": "the customer's own name if given, or null",
    "recipientName": "name of the person the session is for, if it is someone else, or null",
    "recipientPhone": "phone number for the deposit or the person the session is for, or null",
    "isForSomeoneElse": true if the booking is for another person, otherwise null,
    "subIntent": "start" | "provide" | "confirm" | "cancel" | "unknown"
}}

subIntent meanings:
- start: wants to begin a new booking
- provide: is answering a question or giving details
- confirm: is agreeing to proceed
- cancel: wants to stop or cancel the booking in progress
- unknown: none of the above"""

        return await self.call_json(system_prompt, message)

    def _date_context(self) -> str:
        today = self.normalizer.to_local(self.normalizer.clock())
        tomorrow = today + timedelta(days=1)
        return f"""Current date/time information in the studio's timezone (USE THIS FOR DATE PARSING):
- Today is: {today.strftime('%A')}, {today.strftime('%B %d, %Y')}
- Today's date: {today.strftime('%Y-%m-%d')}
- Tomorrow's date: {tomorrow.strftime('%Y-%m-%d')}
- Current time: {today.strftime('%H:%M')}"""
