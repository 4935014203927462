"""Remote document store adapter backed by the Cloud Firestore REST API.

:class:`RemoteStore` names the operations the entity services need. :class:`FirestoreStore`
implements them with a ``googleapiclient`` discovery client. Documents are plain
mappings, converted to and from Firestore's typed value encoding here.

All transport and HTTP failures are raised as :class:`status.RemoteStoreException`
carrying a message only.
"""

import logging
import socket
import ssl
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import google.auth.exceptions
import google_auth_httplib2
import httplib2
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from ..status import status

Filter = Tuple[str, str, Any]

OPERATORS: Dict[str, str] = {
    '==': 'EQUAL',
    '<': 'LESS_THAN',
    '<=': 'LESS_THAN_OR_EQUAL',
    '>': 'GREATER_THAN',
    '>=': 'GREATER_THAN_OR_EQUAL',
}

# Firestore caps a commit at 500 writes
COMMIT_BATCH_SIZE: int = 500


def encode_value(value: Any) -> Dict[str, Any]:
    """Encode a Python value as a Firestore typed value."""
    if value is None:
        return {'nullValue': None}
    if isinstance(value, bool):
        return {'booleanValue': value}
    if isinstance(value, int):
        return {'integerValue': str(value)}
    if isinstance(value, float):
        return {'doubleValue': value}
    if isinstance(value, str):
        return {'stringValue': value}
    if isinstance(value, dict):
        return {'mapValue': {'fields': encode_fields(value)}}
    if isinstance(value, (list, tuple)):
        return {'arrayValue': {'values': [encode_value(v) for v in value]}}
    raise TypeError(f'Cannot encode value of type {type(value).__name__}: {value!r}')


def decode_value(value: Dict[str, Any]) -> Any:
    """Decode a Firestore typed value into a Python value."""
    if 'nullValue' in value:
        return None
    if 'booleanValue' in value:
        return bool(value['booleanValue'])
    if 'integerValue' in value:
        return int(value['integerValue'])
    if 'doubleValue' in value:
        return float(value['doubleValue'])
    if 'stringValue' in value:
        return value['stringValue']
    if 'timestampValue' in value:
        return value['timestampValue']
    if 'mapValue' in value:
        return decode_fields(value['mapValue'].get('fields', {}))
    if 'arrayValue' in value:
        return [decode_value(v) for v in value['arrayValue'].get('values', [])]
    if 'referenceValue' in value:
        return value['referenceValue']
    raise ValueError(f'Unsupported Firestore value: {value!r}')


def encode_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: encode_value(v) for k, v in data.items()}


def decode_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {k: decode_value(v) for k, v in fields.items()}


def build_structured_query(collection: str, filters: Sequence[Filter] = (),
                           order_by: Optional[str] = None, descending: bool = False) -> Dict[str, Any]:
    """Build a ``structuredQuery`` body for ``documents.runQuery``.

    Args:
        collection: Collection id to query.
        filters: ``(field, operator, value)`` tuples combined with AND.
        order_by: Optional field to order by.
        descending: Order direction.

    Raises:
        ValueError: If an operator is not supported.
    """
    query: Dict[str, Any] = {'from': [{'collectionId': collection}]}

    field_filters = []
    for field, op, value in filters:
        if op not in OPERATORS:
            raise ValueError(f'Unsupported operator "{op}", must be one of {list(OPERATORS)}')
        field_filters.append({
            'fieldFilter': {
                'field': {'fieldPath': field},
                'op': OPERATORS[op],
                'value': encode_value(value),
            }
        })
    if len(field_filters) == 1:
        query['where'] = field_filters[0]
    elif field_filters:
        query['where'] = {'compositeFilter': {'op': 'AND', 'filters': field_filters}}

    if order_by:
        query['orderBy'] = [{
            'field': {'fieldPath': order_by},
            'direction': 'DESCENDING' if descending else 'ASCENDING',
        }]
    return query


class RemoteStore:
    """Document store operations used by the entity services.

    Documents are mappings addressed by collection name and document id.
    Implementations raise :class:`status.RemoteStoreException` on failure.
    """

    def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Create or overwrite a document."""
        raise NotImplementedError

    def update(self, collection: str, doc_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Overwrite an existing document. Fails if it does not exist."""
        raise NotImplementedError

    def delete(self, collection: str, doc_id: str) -> None:
        raise NotImplementedError

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Return the document, or None if it does not exist."""
        raise NotImplementedError

    def query(self, collection: str, filters: Sequence[Filter] = (),
              order_by: Optional[str] = None, descending: bool = False) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def delete_many(self, collection: str, doc_ids: Iterable[str]) -> None:
        raise NotImplementedError


class FirestoreStore(RemoteStore):
    """Firestore REST v1 implementation of :class:`RemoteStore`.

    Args:
        settings: SettingsAPI providing the ``firestore`` section.
        auth_manager: AuthManager providing credentials.
    """

    def __init__(self, settings, auth_manager) -> None:
        self.settings = settings
        self.auth_manager = auth_manager
        self._service: Any = None

    @property
    def database_path(self) -> str:
        config = self.settings.get_section('firestore')
        if not config.get('project_id'):
            raise status.RemoteStoreException('No Firestore project id configured.')
        return f'projects/{config["project_id"]}/databases/{config["database"]}'

    @property
    def documents_path(self) -> str:
        return f'{self.database_path}/documents'

    def document_name(self, collection: str, doc_id: str) -> str:
        return f'{self.documents_path}/{collection}/{doc_id}'

    def get_service(self) -> Any:
        """
        Builds (or returns cached) Firestore service client.

        Returns:
            The Firestore API Resource, reusing a single client per store.
        """
        creds = self.auth_manager.get_valid_credentials()
        if self._service is not None:
            return self._service
        try:
            timeout = self.settings.get_section('firestore')['timeout']
            http = google_auth_httplib2.AuthorizedHttp(creds, http=httplib2.Http(timeout=timeout))
            self._service = build('firestore', 'v1', http=http, cache_discovery=False)
            logging.debug('Firestore service client created successfully.')
            return self._service
        except Exception as ex:
            raise status.RemoteStoreException(f'Could not create the Firestore client: {ex}') from ex

    def clear_service(self) -> None:
        """
        Clears the cached Firestore client.
        """
        try:
            if self._service:
                self._service.close()
        except Exception as ex:
            logging.debug(f'Failed closing cached Firestore client: {ex}')
        self._service = None

    def _documents(self) -> Any:
        return self.get_service().projects().databases().documents()

    @staticmethod
    def _execute(request: Any, context: str, allow_missing: bool = False) -> Any:
        """Execute a request, mapping transport errors to status exceptions.

        Args:
            request: A googleapiclient HttpRequest.
            context: Short description used in error messages.
            allow_missing: Return None instead of raising on HTTP 404.
        """
        try:
            return request.execute()
        except HttpError as ex:
            code = ex.resp.status
            if code == 404 and allow_missing:
                return None
            if code == 404:
                raise status.RemoteStoreException(f'{context}: not found.') from ex
            if code in (401, 403):
                raise status.RemoteStoreException(f'{context}: permission denied ({code}).') from ex
            raise status.RemoteStoreException(f'{context}: HTTP {code} {ex.reason}') from ex
        except (socket.timeout, TimeoutError) as ex:
            raise status.RemoteStoreException(f'{context}: request timed out.') from ex
        except ssl.SSLError as ex:
            raise status.RemoteStoreException(f'{context}: SSL error {ex}') from ex
        except (httplib2.HttpLib2Error, google.auth.exceptions.TransportError, OSError) as ex:
            raise status.RemoteStoreException(f'{context}: {ex}') from ex

    def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        request = self._documents().patch(
            name=self.document_name(collection, doc_id),
            body={'fields': encode_fields(data)},
        )
        response = self._execute(request, f'set {collection}/{doc_id}')
        return decode_fields(response.get('fields', {}))

    def update(self, collection: str, doc_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        request = self._documents().patch(
            name=self.document_name(collection, doc_id),
            body={'fields': encode_fields(data)},
            currentDocument_exists=True,
        )
        response = self._execute(request, f'update {collection}/{doc_id}')
        return decode_fields(response.get('fields', {}))

    def delete(self, collection: str, doc_id: str) -> None:
        request = self._documents().delete(name=self.document_name(collection, doc_id))
        self._execute(request, f'delete {collection}/{doc_id}')

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        request = self._documents().get(name=self.document_name(collection, doc_id))
        response = self._execute(request, f'get {collection}/{doc_id}', allow_missing=True)
        if response is None:
            return None
        return decode_fields(response.get('fields', {}))

    def query(self, collection: str, filters: Sequence[Filter] = (),
              order_by: Optional[str] = None, descending: bool = False) -> List[Dict[str, Any]]:
        body = {'structuredQuery': build_structured_query(collection, filters, order_by, descending)}
        request = self._documents().runQuery(parent=self.documents_path, body=body)
        response = self._execute(request, f'query {collection}')
        # Each element is a result row; rows without a document carry only a readTime
        return [
            decode_fields(row['document'].get('fields', {}))
            for row in response or []
            if 'document' in row
        ]

    def delete_many(self, collection: str, doc_ids: Iterable[str]) -> None:
        names = [self.document_name(collection, i) for i in doc_ids]
        for start in range(0, len(names), COMMIT_BATCH_SIZE):
            batch = names[start:start + COMMIT_BATCH_SIZE]
            request = self._documents().commit(
                database=self.database_path,
                body={'writes': [{'delete': name} for name in batch]},
            )
            self._execute(request, f'delete {len(batch)} {collection} documents')
