import asyncio
import logging

from aiokafka import AIOKafkaProducer
from aiokafka.admin import AIOKafkaAdminClient, NewTopic
from aiokafka.errors import KafkaError, NoError, TopicAlreadyExistsError, for_code
from typing_extensions import Protocol, override

from exc import ProviderError, PublishError
from models import ResourceIdentity
from providers import BrokerDirectory

LOG = logging.getLogger(__name__)


class Publisher(Protocol):
    def publish(self, identity: ResourceIdentity) -> None: ...


class KafkaPublisher(Publisher):
    """Queues denied resources on a Kafka topic for reconciliation.

    Brokers are discovered and a new producer is opened on every call; no
    connection state is shared between requests. Each call is bounded by
    `timeout` seconds and is never retried.
    """

    def __init__(
        self,
        directory: BrokerDirectory,
        namespace: str,
        cluster_name: str,
        topic: str,
        partitions: int = 2,
        replication_factor: int = 1,
        timeout: float = 5,
    ):
        self._directory = directory
        self._namespace = namespace
        self._cluster_name = cluster_name
        self._topic = topic
        self._partitions = partitions
        self._replication_factor = replication_factor
        self._timeout = timeout

    @override
    def publish(self, identity):
        try:
            brokers = self._directory.brokers(self._namespace, self._cluster_name)
        except ProviderError as err:
            LOG.error("failed to get broker list: %s", err)
            raise PublishError(f"failed to get broker list: {err}") from err

        LOG.info("retrieved Kafka broker addresses %s", brokers)

        if not brokers:
            raise PublishError(
                f"unable to connect to Kafka: no bootstrap service found "
                f"for cluster {self._cluster_name} in {self._namespace}"
            )

        try:
            asyncio.run(
                asyncio.wait_for(self._send(brokers, identity.encode()), self._timeout)
            )
        except asyncio.TimeoutError as err:
            LOG.error("timed out publishing to Kafka after %ss", self._timeout)
            raise PublishError(
                f"timed out publishing to Kafka after {self._timeout}s"
            ) from err
        except (KafkaError, OSError) as err:
            LOG.error("failed to send message to Kafka: %s", err)
            raise PublishError(f"failed to send message to Kafka: {err}") from err

    async def _send(self, brokers, payload):
        await self._ensure_topic(brokers)

        producer = AIOKafkaProducer(
            bootstrap_servers=brokers,
            acks="all",
            request_timeout_ms=self._timeout_ms(),
        )
        await producer.start()
        try:
            metadata = await producer.send_and_wait(self._topic, payload)
        finally:
            await producer.stop()

        LOG.info(
            "sent message to Kafka. Partition: %s, Offset: %s",
            metadata.partition,
            metadata.offset,
        )

    async def _ensure_topic(self, brokers):
        admin = AIOKafkaAdminClient(
            bootstrap_servers=brokers, request_timeout_ms=self._timeout_ms()
        )
        await admin.start()
        try:
            if self._topic in await admin.list_topics():
                return

            LOG.info(
                "creating topic %s (partitions=%d, replication=%d)",
                self._topic,
                self._partitions,
                self._replication_factor,
            )
            topic = NewTopic(
                name=self._topic,
                num_partitions=self._partitions,
                replication_factor=self._replication_factor,
            )
            try:
                response = await admin.create_topics([topic])
            except TopicAlreadyExistsError:
                return

            for name, code, *_ in response.topic_errors:
                error_type = for_code(code)
                if error_type not in (NoError, TopicAlreadyExistsError):
                    raise error_type(f"failed to create topic {name}")
        finally:
            await admin.close()

    def _timeout_ms(self):
        return int(self._timeout * 1000)
