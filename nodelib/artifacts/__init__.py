"""
Generated instance files: compose projects, `.env` settings and derived configuration.

Templates placed inside the `templates` directory of this module are rendered with Jinja2.  Compose
variables such as `${NETWORK}` pass through untouched, as Jinja2 only acts on `{{ ... }}` and
`{% ... %}` markup.

YAML output is checked with the validators below before anything is committed to an instance
directory; each raises `ValidationError` describing the first problem found.
"""

import logging
import os.path
from typing import Any, Dict, Iterable, Mapping, Set

from jinja2 import Environment, FileSystemLoader
import yaml

from ..errors import ValidationError


LOG = logging.getLogger(__name__)

ENV = Environment(loader=FileSystemLoader(os.path.join(os.path.dirname(__file__), "templates")),
                  trim_blocks=True, lstrip_blocks=True, keep_trailing_newline=True)


def render(template: str, **context: Any) -> str:
    """
    Render a named template from this module's `templates` directory.
    """
    return ENV.get_template("{}.j2".format(template)).render(**context)


def load_yaml(text: str, label: str = "document") -> Dict[str, Any]:
    """
    Parse a YAML document that must be a mapping at the top level.
    """
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as ex:
        raise ValidationError("Invalid YAML in {}: {}".format(label, ex)) from ex
    if not isinstance(data, dict):
        raise ValidationError("Expected a mapping in {}".format(label))
    return data


def validate_project(files: Mapping[str, str], compose_files: Iterable[str] = ("compose.yml",),
                     ) -> Dict[str, Any]:
    """
    Check a compose project split across one or more files, as listed in `COMPOSE_FILE`.

    The merged project must define at least one service, every service needs an image, and every
    network used by a service must be declared, either locally or as external.
    """
    services: Dict[str, Any] = {}
    networks: Dict[str, Any] = {}
    for name in compose_files:
        try:
            text = files[name]
        except KeyError:
            raise ValidationError("Missing compose file {!r}".format(name))
        data = load_yaml(text, name)
        for key, value in (("services", services), ("networks", networks)):
            section = data.get(key) or {}
            if not isinstance(section, dict):
                raise ValidationError("Section {!r} of {} is not a mapping".format(key, name))
            value.update(section)
    if not services:
        raise ValidationError("No services defined")
    used: Set[str] = set()
    for name, service in services.items():
        if not isinstance(service, dict) or not service.get("image"):
            raise ValidationError("Service {!r} has no image".format(name))
        attached = service.get("networks") or ()
        used.update(attached if isinstance(attached, (list, dict)) else ())
    missing = used - set(networks)
    if missing:
        raise ValidationError("Undeclared networks: {}".format(", ".join(sorted(missing))))
    return {"services": services, "networks": networks}


def validate_compose(text: str) -> Dict[str, Any]:
    """
    Check a single self-contained compose file.
    """
    return validate_project({"compose.yml": text})


def validate_scrape_config(text: str) -> Dict[str, Any]:
    """
    Check a Prometheus configuration: `global` and `scrape_configs` sections present, and every
    job named uniquely with at least one target.
    """
    if not text.strip():
        raise ValidationError("Scrape config is empty")
    data = load_yaml(text, "scrape config")
    for section in ("global", "scrape_configs"):
        if section not in data:
            raise ValidationError("Scrape config missing {!r} section".format(section))
    jobs = data["scrape_configs"]
    if not isinstance(jobs, list):
        raise ValidationError("Scrape config jobs must be a list")
    seen: Set[str] = set()
    for job in jobs:
        name = job.get("job_name") if isinstance(job, dict) else None
        if not name:
            raise ValidationError("Scrape job without a name: {!r}".format(job))
        if name in seen:
            raise ValidationError("Duplicate scrape job {!r}".format(name))
        seen.add(name)
        targets = [target for static in job.get("static_configs") or ()
                   for target in static.get("targets") or ()]
        if not targets:
            raise ValidationError("Scrape job {!r} has no targets".format(name))
    return data


def validate_env(text: str) -> Dict[str, str]:
    """
    Check that every non-comment line of a `.env` file is a `KEY=VALUE` assignment.
    """
    env = {}
    for number, line in enumerate(text.splitlines(), 1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep or not key.strip().replace("_", "").isalnum():
            raise ValidationError("Bad .env line {}: {!r}".format(number, line))
        env[key.strip()] = value
    return env
