"""
Descriptor model - docker-compose documents as consumed by the backend.

Documents are loaded with a `BaseLoader` derivative: every scalar stays the
exact string written in the source, so `0123`, `true`, `null` or a 30 digit
number are never coerced. Scalars that were written without quotes are
tagged as `PlainScalar` and dumped back without quotes, which keeps the
written artifact typed the way the author wrote it.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

from deploy_engine.core.errors import DescriptorParseError


DEFAULT_ANNOTATION_KEY = "x-casaos"

LIST_FORM = "list"
MAPPING_FORM = "mapping"


class PlainScalar(str):
    """A scalar that was written without quotes in the source text."""


class DescriptorLoader(yaml.BaseLoader):
    pass


class DescriptorDumper(yaml.SafeDumper):
    pass


def _construct_scalar(loader, node):
    value = loader.construct_scalar(node)
    if node.style is None:
        return PlainScalar(value)
    return value


def _represent_plain(dumper, data):
    # Use the tag the plain text resolves to so the emitter keeps it unquoted.
    tag = dumper.resolve(yaml.ScalarNode, str(data), (True, False))
    return dumper.represent_scalar(tag, str(data))


DescriptorLoader.add_constructor("tag:yaml.org,2002:str", _construct_scalar)
DescriptorDumper.add_representer(PlainScalar, _represent_plain)


# ============================================
# PARSE / SERIALIZE
# ============================================

def load_yaml(text: str) -> Any:
    """Load any YAML text with descriptor scalar semantics."""
    try:
        return yaml.load(text, Loader=DescriptorLoader)
    except yaml.YAMLError as e:
        raise DescriptorParseError(f"Invalid descriptor YAML: {e}") from e


def parse_descriptor(text: Optional[str]) -> Dict[str, Any]:
    """Parse descriptor text into a document with a `services` mapping."""
    if text is None or not text.strip():
        raise DescriptorParseError("Descriptor is empty")

    document = load_yaml(text)

    if not isinstance(document, dict):
        raise DescriptorParseError("Descriptor must be a mapping at the top level")

    services = document.get("services")
    if not isinstance(services, dict) or not services:
        raise DescriptorParseError("Descriptor must declare a non-empty `services` mapping")

    for name, service in services.items():
        if service in ("", None):
            services[name] = {}
        elif not isinstance(service, dict):
            raise DescriptorParseError(f"Service `{name}` must be a mapping")

    return document


def serialize_descriptor(document: Dict[str, Any]) -> str:
    return yaml.dump(
        document,
        Dumper=DescriptorDumper,
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=True,
        width=120,
    )


# ============================================
# ENVIRONMENT
# ============================================

@dataclass
class EnvironmentBlock:
    """
    Tagged variant of a service `environment` section.

    `values` is the canonical mapping used by all internal logic; `form`
    remembers whether the source used `KEY=VALUE` items or a mapping so the
    block can be re-expanded the same way. `None` marks a bare list item
    (`- KEY`) that passes the host value through.
    """

    form: str = MAPPING_FORM
    values: Dict[str, Optional[str]] = field(default_factory=dict)

    @classmethod
    def from_yaml_value(cls, value: Any) -> "EnvironmentBlock":
        if value in (None, ""):
            return cls()

        if isinstance(value, list):
            values: Dict[str, Optional[str]] = {}
            for item in value:
                if not isinstance(item, str):
                    raise DescriptorParseError(f"Unsupported environment entry: {item!r}")
                if "=" in item:
                    key, _, val = item.partition("=")
                    values[key.strip()] = val
                else:
                    values[item.strip()] = None
            return cls(form=LIST_FORM, values=values)

        if isinstance(value, dict):
            values = {}
            for key, val in value.items():
                if isinstance(val, (dict, list)):
                    raise DescriptorParseError(
                        f"Environment variable `{key}` must have a scalar value"
                    )
                values[str(key)] = val
            return cls(form=MAPPING_FORM, values=values)

        raise DescriptorParseError(f"Unsupported environment section: {value!r}")

    def normalized(self) -> Dict[str, str]:
        return {key: "" if val is None else str(val) for key, val in self.values.items()}

    def to_yaml_value(self):
        if self.form == LIST_FORM:
            return [key if val is None else f"{key}={val}" for key, val in self.values.items()]
        return {key: "" if val is None else val for key, val in self.values.items()}


def normalize_environment(service_env: Any) -> Dict[str, str]:
    """Uniform key -> string value mapping for either environment form."""
    return EnvironmentBlock.from_yaml_value(service_env).normalized()


# ============================================
# HELPERS
# ============================================

def services(document: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    return document.get("services") or {}


def service_names(document: Dict[str, Any]) -> List[str]:
    return [str(name) for name in services(document)]


def descriptor_name(document: Dict[str, Any]) -> Optional[str]:
    name = document.get("name")
    if isinstance(name, str) and name.strip():
        return name.strip()
    return None


def annotations(document: Dict[str, Any], key: str = DEFAULT_ANNOTATION_KEY) -> Dict[str, Any]:
    block = document.get(key)
    return block if isinstance(block, dict) else {}


def service_environments(document: Dict[str, Any]) -> Dict[str, Dict[str, str]]:
    """Normalized environment of every service."""
    return {name: block.normalized() for name, block in service_environment_blocks(document).items()}


def service_environment_blocks(document: Dict[str, Any]) -> Dict[str, EnvironmentBlock]:
    return {
        str(name): EnvironmentBlock.from_yaml_value((service or {}).get("environment"))
        for name, service in services(document).items()
    }
