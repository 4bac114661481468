"""
ElevenLabs Conversational AI Service
Signed WebSocket URLs for the audio relay and conversation history for metrics
"""

import httpx
from datetime import datetime
from typing import Optional, Dict, Any, List

from callbridge.core.config import settings
from callbridge.core.logging import get_logger
from callbridge.core.exceptions import VoiceServiceError

logger = get_logger(__name__)


def build_initiation_message(
    dynamic_variables: Dict[str, Any],
    first_message: Optional[str] = None
) -> Dict[str, Any]:
    """First message sent on a new conversation socket"""
    return {
        "type": "conversation_initiation_client_data",
        "dynamic_variables": dynamic_variables,
        "conversation_config_override": {
            "agent": {
                "first_message": first_message or settings.default_first_message
            }
        }
    }


class ElevenLabsService:
    """Service for interacting with the ElevenLabs Conversational AI API"""

    def __init__(self):
        self.api_key = settings.elevenlabs_api_key
        self.base_url = settings.elevenlabs_api_base_url.rstrip("/")
        self.timeout = settings.elevenlabs_http_timeout

        self.headers = {
            "xi-api-key": self.api_key,
            "Content-Type": "application/json"
        }

    async def get_signed_url(self, agent_id: str) -> str:
        """
        Get a short-lived authenticated WebSocket URL for an agent

        Args:
            agent_id: ElevenLabs agent id

        Returns:
            wss:// URL for the conversation socket

        Raises:
            VoiceServiceError: if the API rejects the request
        """
        logger.info(f"Requesting signed URL for agent {agent_id}")

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(
                    f"{self.base_url}/v1/convai/conversation/get_signed_url",
                    params={"agent_id": agent_id},
                    headers=self.headers
                )
                response.raise_for_status()
                signed_url = response.json().get("signed_url")

        except httpx.HTTPStatusError as e:
            logger.error(f"Failed to get signed URL: {e.response.status_code} - {e.response.text}")
            raise VoiceServiceError("Failed to get signed URL", e.response.status_code)
        except httpx.HTTPError as e:
            logger.error(f"Error getting signed URL: {str(e)}")
            raise VoiceServiceError(str(e))

        if not signed_url:
            raise VoiceServiceError("Signed URL missing from response")
        return signed_url

    async def list_conversations(
        self,
        agent_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        page_size: int = 100
    ) -> List[Dict[str, Any]]:
        """
        Fetch every conversation of an agent in a time window, following pagination

        Args:
            agent_id: ElevenLabs agent id
            start: Only conversations starting at or after this time
            end: Only conversations starting before this time
            page_size: Records per page

        Returns:
            Conversation summaries as returned by the API
        """
        params: Dict[str, Any] = {"agent_id": agent_id, "page_size": page_size}
        if start:
            params["call_start_after_unix"] = int(start.timestamp())
        if end:
            params["call_start_before_unix"] = int(end.timestamp())

        conversations: List[Dict[str, Any]] = []
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                while True:
                    response = await client.get(
                        f"{self.base_url}/v1/convai/conversations",
                        params=params,
                        headers=self.headers
                    )
                    response.raise_for_status()
                    data = response.json()
                    conversations.extend(data.get("conversations", []))

                    cursor = data.get("next_cursor")
                    if not data.get("has_more") or not cursor:
                        break
                    params["cursor"] = cursor

        except httpx.HTTPStatusError as e:
            logger.error(f"Failed to list conversations: {e.response.status_code} - {e.response.text}")
            raise VoiceServiceError("Failed to list conversations", e.response.status_code)
        except httpx.HTTPError as e:
            logger.error(f"Error listing conversations: {str(e)}")
            raise VoiceServiceError(str(e))

        logger.info(f"Fetched {len(conversations)} conversation(s) for agent {agent_id}")
        return conversations


# Singleton
_elevenlabs_service: Optional[ElevenLabsService] = None


def get_elevenlabs_service() -> ElevenLabsService:
    """Get or create ElevenLabs service instance"""
    global _elevenlabs_service
    if _elevenlabs_service is None:
        _elevenlabs_service = ElevenLabsService()
    return _elevenlabs_service
