"""Admin GraphQL API transport shared by the ledger store and billing clients"""

from typing import Any, Dict, List, Optional, Type

import httpx

from tryon_billing.config import settings
from tryon_billing.domain.exceptions import DomainException
from tryon_billing.domain.models import ShopContact

INSTALLATION_QUERY = """
query GetAppInstallation {
  currentAppInstallation {
    id
  }
}
"""

SHOP_CONTACT_QUERY = """
query GetShop {
  shop {
    email
    name
    myshopifyDomain
  }
}
"""


def user_error_messages(result: Dict[str, Any] | None) -> List[str]:
    return [error.get("message", "") for error in (result or {}).get("userErrors") or []]


class AdminAPIClient:
    """Authenticated GraphQL client for one shop"""

    error_class: Type[DomainException] = DomainException

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        api_version: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.shop_domain = shop_domain
        self.access_token = access_token
        self.api_version = api_version or settings.admin_api_version
        self.timeout = timeout or settings.http_timeout_seconds
        self.transport = transport
        self._installation_id: Optional[str] = None

    @property
    def endpoint(self) -> str:
        return f"https://{self.shop_domain}/admin/api/{self.api_version}/graphql.json"

    async def execute(self, query: str, variables: Dict[str, Any] | None = None) -> Dict[str, Any]:
        """
        Run a GraphQL document and return its data.

        Raises:
            error_class: On timeout, HTTP errors, top-level GraphQL errors or invalid JSON
        """
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                response = await client.post(
                    self.endpoint,
                    json={"query": query, "variables": variables or {}},
                    headers={"X-Shopify-Access-Token": self.access_token},
                )
                response.raise_for_status()
                payload = response.json()

            except httpx.TimeoutException as e:
                raise self.error_class(f"Admin API timeout after {self.timeout}s") from e
            except httpx.HTTPStatusError as e:
                raise self.error_class(f"Admin API error: {e.response.status_code}") from e
            except httpx.RequestError as e:
                raise self.error_class(f"Admin API unreachable: {e}") from e
            except ValueError as e:
                raise self.error_class(f"Invalid response from Admin API: {e}") from e

        if payload.get("errors"):
            messages = ", ".join(str(error.get("message", error)) for error in payload["errors"])
            raise self.error_class(f"GraphQL errors: {messages}")

        return payload.get("data") or {}

    async def get_installation_id(self) -> str:
        if self._installation_id is None:
            data = await self.execute(INSTALLATION_QUERY)
            installation_id = (data.get("currentAppInstallation") or {}).get("id")
            if not installation_id:
                raise self.error_class("App installation not found")
            self._installation_id = installation_id
        return self._installation_id

    async def get_shop_contact(self) -> ShopContact:
        data = await self.execute(SHOP_CONTACT_QUERY)
        shop = data.get("shop") or {}
        return ShopContact(
            domain=shop.get("myshopifyDomain") or self.shop_domain,
            email=shop.get("email"),
            name=shop.get("name") or self.shop_domain,
        )
