#deploy_engine\api\container.py
from typing import Optional

from deploy_engine.container import Container, build_container
from deploy_engine.orchestrator.application_service import ApplicationService


# Singleton, built on first request
_container: Optional[Container] = None


def get_container() -> Container:
    global _container
    if _container is None:
        _container = build_container()
    return _container


def get_application_service() -> ApplicationService:
    return get_container().service
