"""
JSON-file document store.

Each collection lives in ``<data_dir>/<collection>.json`` as an object mapping
document IDs to document bodies. Paths use the ``collection/doc_id`` form,
e.g. ``settings/election``.
"""
import json
import logging
import os
import secrets
import string
import threading

from errors import DocumentExistsError, PermissionDeniedError, StoreError

logger = logging.getLogger(__name__)

AUTO_ID_ALPHABET = string.ascii_letters + string.digits
AUTO_ID_LENGTH = 20

# Collections whose documents may only be created, never overwritten.
CREATE_ONLY_COLLECTIONS = {'votes'}


def auto_id():
    """Generates a 20-character alphanumeric document ID."""
    return ''.join(secrets.choice(AUTO_ID_ALPHABET) for _ in range(AUTO_ID_LENGTH))


def split_path(path):
    parts = path.strip('/').split('/')
    if len(parts) != 2 or not all(parts):
        raise ValueError(f"Invalid document path: {path!r}")
    return parts[0], parts[1]


class DocumentStore:
    def __init__(self, data_dir):
        self.data_dir = data_dir
        self._lock = threading.RLock()
        os.makedirs(self.data_dir, exist_ok=True)

    def _collection_file(self, collection):
        if not collection or '/' in collection or collection.startswith('.'):
            raise ValueError(f"Invalid collection name: {collection!r}")
        return os.path.join(self.data_dir, f'{collection}.json')

    def _load(self, collection):
        """Reads a collection from disk, resetting it if the file is corrupt."""
        path = self._collection_file(collection)
        if not os.path.exists(path):
            return {}
        try:
            with open(path, 'r') as f:
                data = json.load(f)
        except json.JSONDecodeError:
            logger.warning("Collection file %s is corrupt; starting empty", path)
            return {}
        except OSError as e:
            raise StoreError(f"Could not read collection '{collection}': {e}") from e
        return data if isinstance(data, dict) else {}

    def _write_tmp(self, collection, data):
        """Writes ``data`` next to the collection file and returns the temp path."""
        tmp_path = self._collection_file(collection) + '.tmp'
        try:
            with open(tmp_path, 'w') as f:
                json.dump(data, f, indent=4)
        except OSError as e:
            _discard(tmp_path)
            raise StoreError(f"Could not write collection '{collection}': {e}") from e
        return tmp_path

    def _replace(self, collection, tmp_path):
        try:
            os.replace(tmp_path, self._collection_file(collection))
        except OSError as e:
            _discard(tmp_path)
            raise StoreError(f"Could not write collection '{collection}': {e}") from e

    def _save(self, collection, data):
        self._replace(collection, self._write_tmp(collection, data))

    def get(self, collection, doc_id):
        with self._lock:
            doc = self._load(collection).get(doc_id)
        if doc is None:
            return None
        return {'id': doc_id, **doc}

    def get_path(self, path):
        return self.get(*split_path(path))

    def exists(self, collection, doc_id):
        with self._lock:
            return doc_id in self._load(collection)

    def list(self, collection, **filters):
        with self._lock:
            docs = self._load(collection)
        results = []
        for doc_id, doc in docs.items():
            if all(doc.get(field) == value for field, value in filters.items()):
                results.append({'id': doc_id, **doc})
        return results

    def add(self, collection, data):
        """Stores ``data`` under a fresh auto-generated ID and returns the ID."""
        with self._lock:
            docs = self._load(collection)
            doc_id = auto_id()
            while doc_id in docs:
                doc_id = auto_id()
            docs[doc_id] = _body(data)
            self._save(collection, docs)
        return doc_id

    def set(self, collection, doc_id, data, merge=False):
        with self._lock:
            docs = self._load(collection)
            if collection in CREATE_ONLY_COLLECTIONS and doc_id in docs:
                raise PermissionDeniedError(f'{collection}/{doc_id}', 'update', _body(data))
            if merge and doc_id in docs:
                docs[doc_id] = {**docs[doc_id], **_body(data)}
            else:
                docs[doc_id] = _body(data)
            self._save(collection, docs)

    def set_path(self, path, data, merge=False):
        collection, doc_id = split_path(path)
        self.set(collection, doc_id, data, merge=merge)

    def create(self, collection, doc_id, data):
        """
        Writes a document only if no document exists at the key.

        Raises PermissionDeniedError for create-only collections (the access
        rules forbid overwriting) and DocumentExistsError otherwise.
        """
        path = f'{collection}/{doc_id}'
        with self._lock:
            docs = self._load(collection)
            if doc_id in docs:
                if collection in CREATE_ONLY_COLLECTIONS:
                    raise PermissionDeniedError(path, 'create', _body(data))
                raise DocumentExistsError(path)
            docs[doc_id] = _body(data)
            self._save(collection, docs)

    def delete(self, collection, doc_id):
        """Deletes a document; returns False if it did not exist."""
        with self._lock:
            docs = self._load(collection)
            if doc_id not in docs:
                return False
            del docs[doc_id]
            self._save(collection, docs)
        return True

    def batch(self):
        return WriteBatch(self)


class WriteBatch:
    """
    Queues sets and deletes and applies them together on commit. Usable as a
    context manager; commits on a clean exit.
    """

    def __init__(self, store):
        self._store = store
        self._ops = []
        self._committed = False

    def set(self, collection, doc_id, data):
        self._ops.append(('set', collection, doc_id, _body(data)))
        return self

    def delete(self, collection, doc_id):
        self._ops.append(('delete', collection, doc_id, None))
        return self

    def __len__(self):
        return len(self._ops)

    def commit(self):
        if self._committed:
            raise StoreError("Batch has already been committed.")
        with self._store._lock:
            touched = {}
            for op, collection, doc_id, data in self._ops:
                if collection not in touched:
                    touched[collection] = self._store._load(collection)
                docs = touched[collection]
                if op == 'set':
                    docs[doc_id] = data
                else:
                    docs.pop(doc_id, None)
            # Every file is staged before any is swapped in, so a failed
            # write leaves all collections untouched.
            staged = {}
            try:
                for collection, docs in touched.items():
                    staged[collection] = self._store._write_tmp(collection, docs)
            except StoreError:
                for tmp_path in staged.values():
                    _discard(tmp_path)
                raise
            for collection, tmp_path in staged.items():
                self._store._replace(collection, tmp_path)
        self._committed = True
        logger.debug("Committed batch of %d writes", len(self._ops))

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.commit()
        return False


def _discard(path):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


def _body(data):
    return {k: v for k, v in dict(data).items() if k != 'id'}
