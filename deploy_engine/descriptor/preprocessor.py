"""
Descriptor preprocessing.

Turns the source-form descriptor into the one the deployment backend
reads: built image, template variables, host metadata, resource limits.
`rich` keeps every annotation; `clean` drops the orchestration-only ones
before it is written to disk.
"""

import logging
import os
import re
from copy import deepcopy
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from deploy_engine.core.errors import DescriptorParseError
from deploy_engine.descriptor.document import (
    DEFAULT_ANNOTATION_KEY,
    EnvironmentBlock,
    PlainScalar,
    services,
)

logger = logging.getLogger(__name__)


ORCHESTRATION_ONLY_ANNOTATIONS = ("pre-install-cmd", "post-install-cmd")


@dataclass
class ProcessedDescriptor:
    rich: Dict[str, Any]
    clean: Dict[str, Any]


def _same_kind(original: Any, value: str) -> str:
    # Keep plain scalars plain so the written file types stay as authored.
    if isinstance(original, PlainScalar):
        return PlainScalar(value)
    return value


def main_service_name(document: Dict[str, Any], annotation_key: str = DEFAULT_ANNOTATION_KEY) -> Optional[str]:
    annotations = document.get(annotation_key)
    main = annotations.get("main") if isinstance(annotations, dict) else None
    svc = services(document)
    if main and main in svc:
        return str(main)
    return next(iter(svc), None)


def container_port(mapping: Any) -> Optional[str]:
    """`"8080:80"` -> `"80"`, `{"target": 80}` -> `"80"`."""
    if isinstance(mapping, dict):
        target = mapping.get("target")
        return str(target) if target not in (None, "") else None
    if isinstance(mapping, str) and mapping.strip():
        return mapping.strip().split(":")[-1]
    return None


class DescriptorPreprocessor:
    def __init__(self, settings):
        self._settings = settings
        self._annotation_key = getattr(settings, "annotation_key", DEFAULT_ANNOTATION_KEY)

    # -------------------------
    # TEMPLATE VARIABLES
    # -------------------------

    def _variables(self, app_name: str, annotations: Dict[str, Any], token: Optional[str]):
        s = self._settings
        webui_port = str(annotations.get("webui_port") or "80")

        domain = f"{app_name}{s.ref_separator}{s.ref_domain}"
        if webui_port != "80":
            domain = f"{domain}:{webui_port}"

        variables = [
            (r"\$\{?PUID\}?", s.puid),
            (r"\$\{?PGID\}?", s.pgid),
            (r"\$\{?APP_ID\}?", app_name),
            (r"\$AppID", app_name),
            (r"\$\{?REF_DOMAIN\}?", domain),
            (r"\$\{?REF_SCHEME\}?", s.ref_scheme),
            (r"\$\{?REF_PORT\}?", s.ref_port),
        ]
        if token:
            variables.append((r"\$\{?API_HASH\}?", token))
        return [(re.compile(pattern), str(value)) for pattern, value in variables]

    @staticmethod
    def _substitute(value: Any, variables) -> Any:
        if not isinstance(value, str):
            return value
        result = str(value)
        for pattern, replacement in variables:
            result = pattern.sub(lambda _m: replacement, result)
        return _same_kind(value, result) if result != value else value

    # -------------------------
    # PROCESS
    # -------------------------

    def process(
        self,
        document: Dict[str, Any],
        app_name: str,
        image_ref: Optional[str] = None,
        token: Optional[str] = None,
    ) -> ProcessedDescriptor:
        if not services(document):
            raise DescriptorParseError("Descriptor has no services to process")

        rich = deepcopy(document)
        key = self._annotation_key
        if not isinstance(rich.get(key), dict):
            rich[key] = {}
        annotations = rich[key]

        variables = self._variables(app_name, annotations, token)
        main = main_service_name(rich, key)

        for name, service in services(rich).items():
            is_main = name == main

            if is_main and image_ref:
                service["image"] = image_ref

            self._ports_to_expose(service)

            if is_main:
                service["hostname"] = app_name
                service["user"] = f"{self._settings.puid}:{self._settings.pgid}"
                if annotations.get("icon"):
                    labels = service.get("labels")
                    if isinstance(labels, list):
                        labels.append(f"icon={annotations['icon']}")
                    else:
                        if not isinstance(labels, dict):
                            service["labels"] = labels = {}
                        labels["icon"] = annotations["icon"]

            self._substitute_service(service, variables)
            self._pick_up_icon(service, annotations)
            self._apply_resource_limits(service)

        annotations["is_uncontrolled"] = False
        annotations["store_app_id"] = app_name

        if self._settings.ref_domain and main:
            expose = services(rich)[main].get("expose") or []
            if expose:
                annotations["hostname"] = f"{expose[0]}-{app_name}-{self._settings.ref_domain}"
                annotations["scheme"] = self._settings.ref_scheme or "https"
                annotations["port_map"] = "443" if self._settings.ref_scheme == "https" else "80"

        if isinstance(annotations.get("volumes"), list):
            annotations["volumes"] = [self._substitute(v, variables) for v in annotations["volumes"]]

        clean = deepcopy(rich)
        for annotation in ORCHESTRATION_ONLY_ANNOTATIONS:
            clean[key].pop(annotation, None)

        logger.info(f"[preprocessor] processed descriptor for {app_name} (main service: {main})")
        return ProcessedDescriptor(rich=rich, clean=clean)

    # -------------------------
    # SERVICE STEPS
    # -------------------------

    @staticmethod
    def _ports_to_expose(service: Dict[str, Any]) -> None:
        ports = service.get("ports")
        if not isinstance(ports, list):
            return

        exposed: List[str] = []
        for mapping in ports:
            port = container_port(mapping)
            if port and port not in exposed:
                exposed.append(port)

        if exposed:
            service["expose"] = exposed
            del service["ports"]

    def _substitute_service(self, service: Dict[str, Any], variables) -> None:
        if service.get("environment") not in (None, ""):
            block = EnvironmentBlock.from_yaml_value(service["environment"])
            block.values = {
                k: self._substitute(v, variables) for k, v in block.values.items()
            }
            service["environment"] = block.to_yaml_value()

        volumes = service.get("volumes")
        if isinstance(volumes, list):
            new_volumes = []
            for volume in volumes:
                if isinstance(volume, dict) and "source" in volume:
                    volume = dict(volume, source=self._substitute(volume["source"], variables))
                else:
                    volume = self._substitute(volume, variables)
                new_volumes.append(volume)
            service["volumes"] = new_volumes

        for field_name in ("command", "entrypoint", "working_dir"):
            if isinstance(service.get(field_name), str):
                service[field_name] = self._substitute(service[field_name], variables)

        labels = service.get("labels")
        if isinstance(labels, list):
            service["labels"] = [self._substitute(label, variables) for label in labels]
        elif isinstance(labels, dict):
            for label_key, value in labels.items():
                labels[label_key] = self._substitute(value, variables)

    @staticmethod
    def _pick_up_icon(service: Dict[str, Any], annotations: Dict[str, Any]) -> None:
        labels = service.get("labels")
        if isinstance(labels, dict) and labels.get("icon"):
            annotations["icon"] = labels["icon"]
        elif isinstance(labels, list):
            for label in labels:
                if isinstance(label, str) and label.startswith("icon="):
                    annotations["icon"] = label[len("icon="):]
                    break

    def _apply_resource_limits(self, service: Dict[str, Any]) -> None:
        deploy = service.get("deploy")
        limits = {}
        if isinstance(deploy, dict):
            resources = deploy.get("resources")
            if isinstance(resources, dict) and isinstance(resources.get("limits"), dict):
                limits = resources["limits"]

        memory = self._settings.default_memory_limit
        if memory and "mem_limit" not in service and "memory" not in limits:
            service["mem_limit"] = memory

        cpus = self._settings.default_cpu_limit
        if cpus and "cpus" not in service and "cpus" not in limits:
            service["cpus"] = cpus


# ============================================
# HOST PATHS
# ============================================

def _volume_source(volume: Any) -> Optional[str]:
    if isinstance(volume, dict):
        if volume.get("type", "bind") != "bind":
            return None
        source = volume.get("source")
        return str(source) if source else None

    if isinstance(volume, str):
        source = volume.split(":", 1)[0]
        return source if source.startswith("/") else None

    return None


def host_volume_paths(document: Dict[str, Any], data_root: str) -> List[str]:
    """
    Host bind-mount sources under `data_root`, each listed once.

    Two spellings of the same directory count once; the first spelling wins.
    """
    root = os.path.normpath(data_root)
    seen = set()
    paths: List[str] = []

    for service in services(document).values():
        volumes = service.get("volumes") if isinstance(service, dict) else None
        if not isinstance(volumes, list):
            continue

        for volume in volumes:
            source = _volume_source(volume)
            if not source:
                continue

            normalized = os.path.normpath(source)
            if normalized != root and not normalized.startswith(root + os.sep):
                continue

            resolved = os.path.realpath(normalized)
            if resolved in seen:
                continue
            seen.add(resolved)
            paths.append(normalized)

    return paths
