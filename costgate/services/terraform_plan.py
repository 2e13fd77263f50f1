"""
Terraform definition parsing.
Turns a plan JSON document (or a plain resource list) into InfraResource objects.
"""
from typing import Dict, Any, List, Union
import json
import logging

from costgate.core.errors import EstimationError
from costgate.domain.cost_models import InfraResource


logger = logging.getLogger(__name__)


def _load(definition: Union[str, bytes, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(definition, (str, bytes)):
        try:
            definition = json.loads(definition)
        except json.JSONDecodeError as error:
            raise EstimationError(
                f"Infrastructure definition is not valid JSON: {str(error)}"
            ) from error
    if not isinstance(definition, dict):
        raise EstimationError("Infrastructure definition must be a JSON object")
    return definition


def _list_field(container: Dict[str, Any], key: str, where: str) -> List[Any]:
    value = container.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise EstimationError(f"'{key}' in {where} must be a list")
    return value


def _walk_module(module: Any, resources: List[InfraResource], where: str = "root_module") -> None:
    """Collect managed resources from a plan module and its child modules."""
    if not isinstance(module, dict):
        raise EstimationError(f"Plan module {where} must be a JSON object")
    for raw in _list_field(module, "resources", where):
        if not isinstance(raw, dict):
            raise EstimationError(f"Each resource in {where} must be a JSON object")
        if raw.get("mode", "managed") != "managed":
            continue
        resources.append(_to_resource(raw))
    for index, child in enumerate(_list_field(module, "child_modules", where)):
        child_name = child.get("address") if isinstance(child, dict) else None
        _walk_module(child, resources, child_name or f"{where}.child_modules[{index}]")


def _to_resource(raw: Any) -> InfraResource:
    if not isinstance(raw, dict):
        raise EstimationError("Each resource must be a JSON object")

    terraform_type = raw.get("type")
    if not terraform_type:
        raise EstimationError(f"Resource is missing 'type': {raw.get('address', raw)}")
    if not isinstance(terraform_type, str):
        raise EstimationError(f"Resource 'type' must be a string (got: {terraform_type!r})")

    address = raw.get("address")
    if not address:
        name = raw.get("name")
        if not name:
            raise EstimationError(f"Resource of type {terraform_type} has no address or name")
        address = f"{terraform_type}.{name}"
    if not isinstance(address, str):
        raise EstimationError(f"Resource address must be a string (got: {address!r})")

    values = raw.get("values") or {}
    if not isinstance(values, dict):
        raise EstimationError(f"Resource {address}: 'values' must be an object")

    return InfraResource(address=address, terraform_type=terraform_type, values=values)


def parse_infra_definition(definition: Union[str, bytes, Dict[str, Any]]) -> List[InfraResource]:
    """
    Parse an infrastructure definition into resources.

    Accepts the output of ``terraform show -json`` (resources under
    ``planned_values.root_module``) or ``{"resources": [...]}``.

    Raises:
        EstimationError: If the definition cannot be parsed
    """
    document = _load(definition)
    resources: List[InfraResource] = []

    if "planned_values" in document:
        planned_values = document.get("planned_values") or {}
        if not isinstance(planned_values, dict):
            raise EstimationError("'planned_values' must be a JSON object")
        _walk_module(planned_values.get("root_module") or {}, resources)
    elif "resources" in document:
        if not isinstance(document["resources"], list):
            raise EstimationError("'resources' must be a list")
        for raw in document["resources"]:
            resources.append(_to_resource(raw))
    else:
        raise EstimationError(
            "Unrecognized infrastructure definition: expected 'planned_values' or 'resources'"
        )

    seen = set()
    for resource in resources:
        if resource.address in seen:
            raise EstimationError(f"Duplicate resource address: {resource.address}")
        seen.add(resource.address)

    logger.debug("Parsed %d resources from infrastructure definition", len(resources))
    return resources
