from abc import ABC, abstractmethod
from sqlalchemy import create_engine, Column, String, DateTime, JSON
from sqlalchemy.orm import sessionmaker, scoped_session, declarative_base
import copy
import datetime
import logging
from typing import Any, List, Dict


LOGGER = logging.getLogger(__name__)


Base = declarative_base()
class KeyValueRecord(Base):
    __tablename__ = "kv_store"
    key = Column(String, primary_key=True)
    value = Column(JSON, nullable=True)
    updated_at = Column(DateTime, default=datetime.datetime.now, onupdate=datetime.datetime.now)


class KeyValueStore(ABC):
    """
    Durable get/set/remove for small JSON blobs such as the thread maps.

    Every call completes synchronously so a read-modify-write done by a caller
    between two awaits is never interleaved with another writer on the event loop.
    """

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        pass

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        pass

    @abstractmethod
    def remove(self, key: str) -> bool:
        """
        Remove a key. Returns False if it did not exist.
        """
        pass

    @abstractmethod
    def keys(self, prefix: str = "") -> List[str]:
        pass

    def close(self) -> None:
        pass


class PersistentKeyValueStore(KeyValueStore):

    def __init__(self, metadata_db_url: str):
        self.metadata_db_url = metadata_db_url
        self.engine = create_engine(self.metadata_db_url, echo=False)
        Base.metadata.create_all(self.engine)
        self.session = scoped_session(sessionmaker(bind=self.engine))
        LOGGER.info(f"Created PersistentKeyValueStore using database engine: {self.metadata_db_url}")

    def get_db_session(self) -> scoped_session:
        if not self.engine:
            self.engine = create_engine(self.metadata_db_url, echo=False)
            Base.metadata.create_all(self.engine)
            self.session = scoped_session(sessionmaker(bind=self.engine))
            LOGGER.info(f"Re-created PersistentKeyValueStore using database engine: {self.metadata_db_url}")
        return self.session()

    def get(self, key: str, default: Any = None) -> Any:
        with self.get_db_session() as session:
            record = session.get(KeyValueRecord, key)
            if record is None or record.value is None:
                return default
            return copy.deepcopy(record.value)

    def set(self, key: str, value: Any) -> None:
        session = self.get_db_session()
        try:
            record = session.get(KeyValueRecord, key)
            if record is None:
                session.add(KeyValueRecord(key=key, value=value))
            else:
                record.value = value
                record.updated_at = datetime.datetime.now()
            session.commit()
            LOGGER.debug(f"Stored key {key}")
        except Exception as e:
            session.rollback()
            LOGGER.error(f"Error storing key {key}: {e}", exc_info=True)
            raise
        finally:
            session.close()

    def remove(self, key: str) -> bool:
        session = self.get_db_session()
        try:
            deleted = session.query(KeyValueRecord).filter(KeyValueRecord.key == key).delete()
            session.commit()
            if deleted:
                LOGGER.debug(f"Removed key {key}")
            return deleted > 0
        except Exception as e:
            session.rollback()
            LOGGER.error(f"Error removing key {key}: {e}", exc_info=True)
            raise
        finally:
            session.close()

    def keys(self, prefix: str = "") -> List[str]:
        with self.get_db_session() as session:
            query = session.query(KeyValueRecord.key)
            if prefix:
                query = query.filter(KeyValueRecord.key.startswith(prefix))
            return [row[0] for row in query.order_by(KeyValueRecord.key).all()]

    def close(self) -> None:
        if self.engine:
            self.session.remove()
            self.engine.dispose()
            self.engine = None
            LOGGER.info(f"Closed database engine")


class InMemoryKeyValueStore(KeyValueStore):
    """Process-local store with the same copy semantics as the database store."""

    def __init__(self, initial: Dict[str, Any] = None):
        self._data: Dict[str, Any] = copy.deepcopy(initial) if initial else {}

    def get(self, key: str, default: Any = None) -> Any:
        if key not in self._data:
            return default
        return copy.deepcopy(self._data[key])

    def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    def remove(self, key: str) -> bool:
        if key not in self._data:
            return False
        del self._data[key]
        return True

    def keys(self, prefix: str = "") -> List[str]:
        return sorted(k for k in self._data if k.startswith(prefix))
