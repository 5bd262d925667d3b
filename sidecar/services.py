"""
Stopping and starting the containers whose data is being backed up.

Each service is first handled as a Docker Compose service of the detected
compose project (every container labelled with that project and service
name). If that is not possible the identifier is treated as a plain
container name or id. Failures are logged and never abort a run.
"""

import logging
import time
from contextlib import contextmanager
from typing import Iterable, Iterator, Optional

import docker
from docker.errors import DockerException
from requests.exceptions import RequestException


logger = logging.getLogger(__name__)

COMPOSE_PROJECT_LABEL = 'com.docker.compose.project'
COMPOSE_SERVICE_LABEL = 'com.docker.compose.service'

_VERBS = {
    'stop': ('Stopping', 'stopped'),
    'start': ('Starting', 'started'),
}


class ServiceController:
    """
    Stops and starts an ordered set of services around a backup or restore.
    """

    def __init__(self, stop_wait: int = 2, start_wait: int = 3,
                 compose_project: Optional[str] = None, client=None):
        """
        Args:
            stop_wait: Seconds to wait after stopping (0 disables)
            start_wait: Seconds to wait after starting (0 disables)
            compose_project: Compose project name; detected from container
                labels when not given
            client: Docker client (created from the environment on first use)
        """
        self.stop_wait = stop_wait
        self.start_wait = start_wait
        self.compose_project = compose_project
        self._client = client

    @classmethod
    def from_config(cls, config) -> 'ServiceController':
        return cls(
            stop_wait=config.stop_wait,
            start_wait=config.start_wait,
            compose_project=config.compose_project
        )

    def _get_client(self):
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                logger.warning(f"Docker is not available: {e}")
                return None
        return self._client

    def stop(self, services: Iterable[str]) -> int:
        """
        Stop each service. Returns the number of services stopped.
        """
        return self._apply(list(services), 'stop', self.stop_wait)

    def start(self, services: Iterable[str]) -> int:
        """
        Start each service. Returns the number of services started.
        """
        return self._apply(list(services), 'start', self.start_wait)

    @contextmanager
    def stopped(self, services: Iterable[str]) -> Iterator[None]:
        """
        Keep services stopped for the duration of the block.

        The services are started again however the block exits.
        """
        services = list(services)
        self.stop(services)
        try:
            yield
        finally:
            self.start(services)

    def _apply(self, services: list, action: str, wait: int) -> int:
        if not services:
            return 0

        verb, _ = _VERBS[action]
        logger.info(f"{verb} services: {', '.join(services)}")

        client = self._get_client()
        if client is None:
            for service in services:
                logger.warning(f"Failed to {action} {service} - Docker is not reachable")
            return 0

        project = self._detect_project(client, services)

        succeeded = 0
        for service in services:
            done = False

            if project:
                done = self._apply_compose(client, project, service, action)

            if not done:
                done = self._apply_container(client, service, action)

            if done:
                succeeded += 1
                logger.debug(f"Successfully {_VERBS[action][1]} {service}")
            else:
                logger.warning(f"Failed to {action} {service} - it may not be running or not exist")

        # Give applications time to flush buffers or pass health checks
        if wait > 0:
            logger.debug(f"Waiting {wait}s for services to {action} completely...")
            time.sleep(wait)

        return succeeded

    def _detect_project(self, client, services: list) -> Optional[str]:
        """Compose project from configuration or from the services' labels."""
        if self.compose_project:
            return self.compose_project

        for service in services:
            try:
                container = client.containers.get(service)
            except (DockerException, RequestException):
                continue

            project = (container.labels or {}).get(COMPOSE_PROJECT_LABEL)
            if project:
                logger.debug(f"Detected compose project: {project}")
                return project

        return None

    def _apply_compose(self, client, project: str, service: str, action: str) -> bool:
        try:
            containers = client.containers.list(all=True, filters={
                'label': [
                    f'{COMPOSE_PROJECT_LABEL}={project}',
                    f'{COMPOSE_SERVICE_LABEL}={service}'
                ]
            })
        except (DockerException, RequestException) as e:
            logger.debug(f"Compose lookup failed for {service}: {e}")
            return False

        if not containers:
            return False

        logger.info(f"{_VERBS[action][0]} compose service: {service}")
        try:
            for container in containers:
                getattr(container, action)()
        except (DockerException, RequestException) as e:
            logger.debug(f"Compose {action} failed for {service}: {e}")
            return False

        return True

    def _apply_container(self, client, service: str, action: str) -> bool:
        logger.info(f"{_VERBS[action][0]} container: {service}")
        try:
            container = client.containers.get(service)
            getattr(container, action)()
        except (DockerException, RequestException) as e:
            logger.debug(f"Container {action} failed for {service}: {e}")
            return False

        return True
