import httpx
from django.conf import settings
import logging

from .exceptions import ProviderError

logger = logging.getLogger(__name__)

CREATE_PHONE_CALL_PATH = "/v2/create-phone-call"


class CallProviderClient:
    def __init__(self, base_url=None, api_key=None, timeout=None, transport=None):
        self._base_url = base_url
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport
        self._http = None

    @property
    def http(self):
        if self._http is None or self._http.is_closed:
            logger.info("Initializing new call provider HTTP client...")
            self._http = httpx.Client(
                base_url=self._base_url or settings.RETELL_BASE_URL,
                headers={
                    "Authorization": f"Bearer {self._api_key or settings.RETELL_API_KEY}",
                    "Content-Type": "application/json",
                },
                timeout=self._timeout or settings.RETELL_TIMEOUT_SECONDS,
                transport=self._transport,
            )
        return self._http

    def create_phone_call(self, to_number, from_number, agent_id, variables, metadata):
        """Place an outbound call and return the provider call id."""
        payload = {
            "to_number": to_number,
            "from_number": from_number,
            "override_agent_id": agent_id,
            "retell_llm_dynamic_variables": variables,
            "metadata": metadata,
        }
        try:
            response = self.http.post(CREATE_PHONE_CALL_PATH, json=payload)
        except httpx.HTTPError as e:
            logger.error(f"Call provider request failed for ****{str(to_number)[-4:]}: {e}")
            self.close() # Force a fresh client on next attempt
            raise ProviderError(f"Call provider unreachable: {e}") from e

        if response.status_code >= 400:
            raise ProviderError(
                f"Call provider returned {response.status_code}",
                details={"status_code": response.status_code, "body": response.text[:500]},
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError("Call provider returned a non-JSON body") from e

        call_id = data.get("call_id")
        if not call_id:
            raise ProviderError("Call provider response has no call_id", details=data)
        return call_id

    def close(self):
        if self._http is not None:
            self._http.close()
            self._http = None


# Global instance
provider_client = CallProviderClient()
