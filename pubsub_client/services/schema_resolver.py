"""Topic and schema lookup with a per-subscription cache."""
from typing import Dict
import structlog
from ..adapters.base import SchemaSource
from ..decoding import load_schema
from ..errors import DecodeError, TransportError
from ..event_models import SchemaRef

log = structlog.get_logger()


class SchemaResolver:
    """
    Resolve topic schemas through a schema source.

    Lookups never fail the subscription: any error is logged as a warning and
    turns into a missing schema, which sends decoding down the schema-less
    path. Results, including failed ones, are cached per schema id.
    """

    def __init__(self, source: SchemaSource):
        """
        Initialize resolver.

        Args:
            source: Topic/schema metadata source (usually the transport)
        """
        self._source = source
        self._cache: Dict[str, SchemaRef] = {}

    async def resolve_topic(self, topic: str) -> SchemaRef | None:
        """
        Resolve the current schema of a topic.

        Returns:
            SchemaRef for the topic, or None if the topic lookup failed
        """
        try:
            schema_id = await self._source.get_topic_schema_id(topic)
        except TransportError as e:
            log.warning("schema.topic_lookup_failed", topic=topic, error=str(e), code=e.code)
            return None
        except Exception as e:
            log.warning(
                "schema.topic_lookup_failed",
                topic=topic,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

        return await self.resolve(schema_id)

    async def resolve(self, schema_id: str) -> SchemaRef:
        """
        Resolve a schema by id.

        Returns:
            SchemaRef whose definition is None when the schema is unavailable
        """
        cached = self._cache.get(schema_id)
        if cached is not None:
            return cached

        try:
            definition = load_schema(await self._source.get_schema_definition(schema_id))
        except TransportError as e:
            log.warning("schema.lookup_failed", schema_id=schema_id, error=str(e), code=e.code)
            definition = None
        except DecodeError as e:
            log.warning("schema.parse_failed", schema_id=schema_id, error=str(e), detail=e.detail)
            definition = None
        except Exception as e:
            log.warning(
                "schema.lookup_failed",
                schema_id=schema_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            definition = None
        else:
            if isinstance(definition, dict):
                log.info("schema.resolved", schema_id=schema_id)
            else:
                log.warning("schema.not_a_record", schema_id=schema_id)
                definition = None

        ref = SchemaRef(schema_id=schema_id, definition=definition)
        self._cache[schema_id] = ref
        return ref

    def clear(self):
        """Drop cached schemas."""
        self._cache.clear()
