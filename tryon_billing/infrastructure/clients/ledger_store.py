"""Ledger store client: namespaced, typed key/value records on the app installation"""

from typing import Dict, Iterable, List

from tryon_billing.domain.exceptions import LedgerStoreError
from tryon_billing.domain.models import BatchSetResult, StoreEntry
from tryon_billing.infrastructure.clients.admin_api import AdminAPIClient, user_error_messages
from tryon_billing.infrastructure.observability.metrics import ledger_store_failures_counter


# metafieldsSet accepts at most 25 metafields per call
BATCH_SIZE = 25

GET_METAFIELDS_QUERY = """
query GetLedger($ownerId: ID!, $namespace: String!) {
  appInstallation(id: $ownerId) {
    metafields(namespace: $namespace, first: 50) {
      edges {
        node {
          key
          value
          type
        }
      }
    }
  }
}
"""

SET_METAFIELDS_MUTATION = """
mutation SetLedger($metafields: [MetafieldsSetInput!]!) {
  metafieldsSet(metafields: $metafields) {
    metafields {
      key
    }
    userErrors {
      field
      message
    }
  }
}
"""


class LedgerStoreClient(AdminAPIClient):
    """Reads and batch-writes ledger entries through the Admin API"""

    error_class = LedgerStoreError

    async def get(self, owner_id: str, namespace: str, keys: Iterable[str] | None = None) -> Dict[str, StoreEntry]:
        """
        Fetch entries of a namespace, optionally filtered to keys.

        Raises:
            LedgerStoreError: On transport failure or missing owner
        """
        try:
            data = await self.execute(GET_METAFIELDS_QUERY, {"ownerId": owner_id, "namespace": namespace})
        except LedgerStoreError:
            ledger_store_failures_counter.labels(operation="get").inc()
            raise

        installation = data.get("appInstallation")
        if installation is None:
            raise LedgerStoreError(f"Ledger owner not found: {owner_id}")

        wanted = set(keys) if keys is not None else None
        entries: Dict[str, StoreEntry] = {}
        for edge in (installation.get("metafields") or {}).get("edges") or []:
            node = edge.get("node") or {}
            key = node.get("key")
            if key is None or (wanted is not None and key not in wanted):
                continue
            entries[key] = StoreEntry(key=key, type=node.get("type", "single_line_text_field"), value=node.get("value"))

        return entries

    async def batch_set(self, owner_id: str, namespace: str, entries: List[StoreEntry]) -> BatchSetResult:
        """
        Write entries in chunks of 25.

        No multi-field transaction: if a later chunk fails, earlier chunks stay
        written and are reported in written_keys.
        """
        written: List[str] = []
        for start in range(0, len(entries), BATCH_SIZE):
            chunk = entries[start:start + BATCH_SIZE]
            metafields = [
                {
                    "ownerId": owner_id,
                    "namespace": namespace,
                    "key": entry.key,
                    "type": entry.type,
                    "value": entry.value,
                }
                for entry in chunk
            ]

            try:
                data = await self.execute(SET_METAFIELDS_MUTATION, {"metafields": metafields})
            except LedgerStoreError as e:
                ledger_store_failures_counter.labels(operation="batch_set").inc()
                if not written:
                    raise
                return BatchSetResult(success=False, errors=[str(e)], written_keys=written)

            errors = user_error_messages(data.get("metafieldsSet"))
            if errors:
                ledger_store_failures_counter.labels(operation="batch_set").inc()
                return BatchSetResult(success=False, errors=errors, written_keys=written)

            written.extend(entry.key for entry in chunk)

        return BatchSetResult(success=True, written_keys=written)
