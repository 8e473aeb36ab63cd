import logging

from kubernetes import config, client
from openshift.dynamic import DynamicClient
from typing_extensions import Protocol, override

from exc import ProviderError

LOG = logging.getLogger(__name__)

KAFKA_PORT = 9092


class BrokerDirectory(Protocol):
    def brokers(self, namespace: str, cluster_name: str) -> list[str]: ...


class KubernetesProvider(BrokerDirectory):
    """Finds the bootstrap services of a Strimzi Kafka cluster."""

    def __init__(self, port: int = KAFKA_PORT, timeout: float | None = None):
        """Allocate a Kubernetes dynamic client and Service API client"""

        super().__init__()

        try:
            config.load_config()
        except config.ConfigException as err:
            LOG.warning("unable to configure Kubernetes client: %s", err)
            raise ProviderError("unable to configure Kubernetes client")

        k8s_client = client.ApiClient()
        dyn_client = DynamicClient(k8s_client)

        self._client = dyn_client
        self._service_resource = dyn_client.resources.get(api_version="v1", kind="Service")
        self._port = port
        self._timeout = timeout

    @override
    def brokers(self, namespace, cluster_name):
        selector = f"strimzi.io/cluster={cluster_name},strimzi.io/kind=Kafka"
        try:
            services = self._service_resource.get(
                namespace=namespace,
                label_selector=selector,
                _request_timeout=self._timeout,
            )
        except Exception as err:
            LOG.error("failed to list services in %s: %s", namespace, err)
            raise ProviderError(f"failed to list kafka services in {namespace}: {err}")

        return bootstrap_addresses(services.items, self._port)


def bootstrap_addresses(services, port=KAFKA_PORT):
    addresses = []
    for svc in services:
        cluster_ip = svc.spec.clusterIP
        # Headless services have no virtual address to connect to.
        if not cluster_ip or cluster_ip == "None":
            continue
        if "bootstrap" not in svc.metadata.name:
            continue
        addresses.append(f"{cluster_ip.strip()}:{port}")

    return addresses
