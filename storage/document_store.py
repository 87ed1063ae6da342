"""DynamoDB-backed document gateway used to persist calendars."""
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import boto3
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)


class _DeleteField:
    """Sentinel marking a field to be removed by update_document."""

    def __repr__(self) -> str:
        return 'DELETE_FIELD'


DELETE_FIELD = _DeleteField()


class DocumentStoreError(Exception):
    """Raised when the underlying store rejects a read or write."""


class DynamoDBDocumentStore:
    """Generic read / partial-update gateway over DynamoDB tables."""

    KEY_ATTRIBUTE = 'id'

    def __init__(
        self,
        table_names: Optional[Dict[str, str]] = None,
        region_name: Optional[str] = None
    ):
        """
        Initialize DynamoDB resource.

        Args:
            table_names: Mapping of collection name to table name; a
                collection missing from it uses its own name
            region_name: AWS region (default: from the environment)
        """
        self.table_names = table_names or {}
        self.dynamodb = boto3.resource('dynamodb', region_name=region_name)
        self._tables = {}
        logger.info(f"Initialized DynamoDBDocumentStore for {self.table_names}")

    def _table(self, collection: str):
        if collection not in self._tables:
            table_name = self.table_names.get(collection, collection)
            self._tables[collection] = self.dynamodb.Table(table_name)
        return self._tables[collection]

    def get_document(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """
        Read one document.

        Args:
            collection: Collection name
            doc_id: Document id

        Returns:
            Document dict, or None if it does not exist
        """
        try:
            response = self._table(collection).get_item(
                Key={self.KEY_ATTRIBUTE: doc_id}
            )
        except ClientError as e:
            logger.error(f"Error reading {collection}/{doc_id}: {e}")
            raise DocumentStoreError(
                f"Failed to read {collection}/{doc_id}: {e}"
            ) from e

        item = response.get('Item')
        if item is None:
            return None
        return _from_dynamodb(item)

    def update_document(
        self,
        collection: str,
        doc_id: str,
        fields: Dict[str, Any]
    ) -> None:
        """
        Partially update a document, creating it if needed.

        Dotted keys ('sync.syncStatus') address nested map attributes and
        DELETE_FIELD removes an attribute.

        Args:
            collection: Collection name
            doc_id: Document id
            fields: Field paths to new values
        """
        fields = {
            path: value for path, value in fields.items()
            if path != self.KEY_ATTRIBUTE
        }
        if not fields:
            return

        table = self._table(collection)
        request = self._build_update(fields)

        try:
            table.update_item(Key={self.KEY_ATTRIBUTE: doc_id}, **request)
        except ClientError as e:
            parents = _parent_paths(fields)
            if _error_code(e) != 'ValidationException' or not parents:
                logger.error(f"Error updating {collection}/{doc_id}: {e}")
                raise DocumentStoreError(
                    f"Failed to update {collection}/{doc_id}: {e}"
                ) from e

            # Nested path whose parent map does not exist yet
            logger.info(f"Creating parent maps {parents} on {collection}/{doc_id}")
            try:
                self._ensure_parents(table, doc_id, parents)
                table.update_item(Key={self.KEY_ATTRIBUTE: doc_id}, **request)
            except ClientError as retry_error:
                logger.error(f"Error updating {collection}/{doc_id}: {retry_error}")
                raise DocumentStoreError(
                    f"Failed to update {collection}/{doc_id}: {retry_error}"
                ) from retry_error

    def _build_update(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        """
        Build UpdateItem arguments for the given field paths.

        Every path segment is aliased through ExpressionAttributeNames so
        reserved words and characters in map keys are safe.
        """
        set_clauses = []
        remove_clauses = []
        names = {}
        values = {}

        for index, (path, value) in enumerate(fields.items()):
            placeholders = []
            for depth, segment in enumerate(path.split('.')):
                placeholder = f"#f{index}_{depth}"
                names[placeholder] = segment
                placeholders.append(placeholder)
            path_expression = '.'.join(placeholders)

            if value is DELETE_FIELD:
                remove_clauses.append(path_expression)
            else:
                set_clauses.append(f"{path_expression} = :v{index}")
                values[f":v{index}"] = _to_dynamodb(value)

        expression = []
        if set_clauses:
            expression.append('SET ' + ', '.join(set_clauses))
        if remove_clauses:
            expression.append('REMOVE ' + ', '.join(remove_clauses))

        request = {
            'UpdateExpression': ' '.join(expression),
            'ExpressionAttributeNames': names
        }
        if values:
            request['ExpressionAttributeValues'] = values
        return request

    def _ensure_parents(self, table, doc_id: str, parents: List[Tuple[str, ...]]) -> None:
        """Create missing parent maps, shallowest first."""
        for parent in parents:
            names = {f"#p{depth}": segment for depth, segment in enumerate(parent)}
            path_expression = '.'.join(names)
            table.update_item(
                Key={self.KEY_ATTRIBUTE: doc_id},
                UpdateExpression=(
                    f"SET {path_expression} = "
                    f"if_not_exists({path_expression}, :empty)"
                ),
                ExpressionAttributeNames=names,
                ExpressionAttributeValues={':empty': {}}
            )


def _parent_paths(fields: Dict[str, Any]) -> List[Tuple[str, ...]]:
    """Unique parent paths of dotted field keys, ordered by depth."""
    parents = set()
    for path in fields:
        segments = tuple(path.split('.'))
        for depth in range(1, len(segments)):
            parents.add(segments[:depth])
    return sorted(parents, key=len)


def _error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', '')


def _to_dynamodb(value: Any) -> Any:
    """Convert floats to Decimal, recursively, as DynamoDB requires."""
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {key: _to_dynamodb(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_dynamodb(item) for item in value]
    return value


def _from_dynamodb(value: Any) -> Any:
    """Convert Decimal numbers back to int or float, recursively."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {key: _from_dynamodb(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_from_dynamodb(item) for item in value]
    return value
