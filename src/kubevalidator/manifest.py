"""Validation of Kubernetes manifest files.

A manifest file is a YAML stream of one or more Kubernetes objects. Each
object is checked for the fields every Kubernetes object needs (apiVersion,
kind, metadata with a name), optionally for unknown fields (strict mode),
and for API versions that the targeted Kubernetes release no longer serves.

Findings are reported as check run annotations pointing at the line of the
offending YAML node.
"""

from __future__ import annotations

import copy
import re
from typing import Any, Iterator, List, Optional, Sequence, Tuple, Union

import jsonschema
import yaml

from kubevalidator.github.model import Annotation

Version = Tuple[int, int]

_VERSION_RE = re.compile(r"^v?(\d+)\.(\d+)(?:\.(\d+))?$")


def parse_version(version: str) -> Version:
    m = _VERSION_RE.match(version.strip())
    if m is None:
        raise ValueError(f"Invalid Kubernetes version '{version}'")
    return int(m.group(1)), int(m.group(2))


METADATA_FIELDS = [
    "name",
    "generateName",
    "namespace",
    "labels",
    "annotations",
    "finalizers",
    "ownerReferences",
    "uid",
    "resourceVersion",
    "generation",
    "creationTimestamp",
    "deletionTimestamp",
    "deletionGracePeriodSeconds",
    "managedFields",
    "selfLink",
]

TOP_LEVEL_FIELDS = [
    "apiVersion",
    "kind",
    "metadata",
    "spec",
    "status",
    "data",
    "stringData",
    "binaryData",
    "type",
    "immutable",
    "rules",
    "subjects",
    "roleRef",
    "aggregationRule",
    "webhooks",
    "secrets",
    "imagePullSecrets",
    "automountServiceAccountToken",
    "provisioner",
    "parameters",
    "reclaimPolicy",
    "volumeBindingMode",
    "allowVolumeExpansion",
    "mountOptions",
    "allowedTopologies",
    "handler",
    "overhead",
    "scheduling",
    "value",
    "globalDefault",
    "description",
    "preemptionPolicy",
    "template",
    "subsets",
    "endpoints",
    "addressType",
    "ports",
    "driver",
    "limits",
]

KUBERNETES_OBJECT_SCHEMA = {
    "type": "object",
    "required": ["apiVersion", "kind", "metadata"],
    "properties": {
        "apiVersion": {"type": "string", "minLength": 1},
        "kind": {"type": "string", "minLength": 1},
        "metadata": {
            "type": "object",
            "properties": {
                "name": {"type": "string", "minLength": 1},
                "generateName": {"type": "string", "minLength": 1},
                "namespace": {"type": "string"},
                "labels": {
                    "type": "object",
                    "additionalProperties": {"type": "string"},
                },
                "annotations": {
                    "type": "object",
                    "additionalProperties": {"type": "string"},
                },
            },
            "anyOf": [{"required": ["name"]}, {"required": ["generateName"]}],
        },
    },
}


def _strict_schema(schema: dict) -> dict:
    strict = copy.deepcopy(schema)
    strict["properties"].update(
        {f: {} for f in TOP_LEVEL_FIELDS if f not in strict["properties"]}
    )
    strict["additionalProperties"] = False
    metadata = strict["properties"]["metadata"]
    metadata["properties"].update(
        {f: {} for f in METADATA_FIELDS if f not in metadata["properties"]}
    )
    metadata["additionalProperties"] = False
    return strict


_VALIDATORS = {
    False: jsonschema.Draft7Validator(KUBERNETES_OBJECT_SCHEMA),
    True: jsonschema.Draft7Validator(_strict_schema(KUBERNETES_OBJECT_SCHEMA)),
}

# (apiVersion, kind) -> (deprecated in, removed in). A kind of None covers
# every kind of that API group version.
API_LIFECYCLE = {
    ("extensions/v1beta1", "Deployment"): ((1, 8), (1, 16)),
    ("extensions/v1beta1", "DaemonSet"): ((1, 8), (1, 16)),
    ("extensions/v1beta1", "ReplicaSet"): ((1, 8), (1, 16)),
    ("extensions/v1beta1", "NetworkPolicy"): ((1, 9), (1, 16)),
    ("extensions/v1beta1", "PodSecurityPolicy"): ((1, 10), (1, 16)),
    ("extensions/v1beta1", "Ingress"): ((1, 14), (1, 22)),
    ("apps/v1beta1", None): ((1, 9), (1, 16)),
    ("apps/v1beta2", None): ((1, 9), (1, 16)),
    ("apiextensions.k8s.io/v1beta1", None): ((1, 16), (1, 22)),
    ("admissionregistration.k8s.io/v1beta1", None): ((1, 16), (1, 22)),
    ("rbac.authorization.k8s.io/v1beta1", None): ((1, 17), (1, 22)),
    ("scheduling.k8s.io/v1beta1", None): ((1, 14), (1, 22)),
    ("networking.k8s.io/v1beta1", None): ((1, 19), (1, 22)),
    ("batch/v1beta1", "CronJob"): ((1, 21), (1, 25)),
    ("policy/v1beta1", None): ((1, 21), (1, 25)),
    ("autoscaling/v2beta1", None): ((1, 22), (1, 25)),
    ("autoscaling/v2beta2", None): ((1, 23), (1, 26)),
    ("flowcontrol.apiserver.k8s.io/v1beta2", None): ((1, 26), (1, 29)),
}


def load_documents(text: str) -> Iterator[Tuple[yaml.Node, Any]]:
    """Yield each document of a YAML stream together with its node tree."""
    loader = yaml.SafeLoader(text)
    try:
        while loader.check_node():
            node = loader.get_node()
            yield node, loader.construct_document(node)
    finally:
        loader.dispose()


def locate(node: yaml.Node, path: Sequence[Union[str, int]]) -> yaml.Node:
    """Follow ``path`` through a node tree as far as it exists."""
    for key in path:
        if isinstance(node, yaml.MappingNode) and isinstance(key, str):
            for key_node, value_node in node.value:
                if isinstance(key_node, yaml.ScalarNode) and key_node.value == key:
                    node = value_node
                    break
            else:
                return node
        elif (
            isinstance(node, yaml.SequenceNode)
            and isinstance(key, int)
            and key < len(node.value)
        ):
            node = node.value[key]
        else:
            return node
    return node


def node_position(node: yaml.Node) -> dict:
    line = node.start_mark.line + 1
    position = {"start_line": line, "end_line": line}
    if isinstance(node, yaml.ScalarNode) and node.end_mark.line == node.start_mark.line:
        position["start_column"] = node.start_mark.column + 1
        position["end_column"] = max(node.end_mark.column, node.start_mark.column + 1)
    return position


def dotted(path: Sequence[Union[str, int]]) -> str:
    out = ""
    for key in path:
        if isinstance(key, int):
            out += f"[{key}]"
        else:
            out += f".{key}" if out else key
    return out


class ManifestValidator:
    """Validates the objects of one manifest file against one Kubernetes version."""

    def __init__(self, version: Optional[str] = None, strict: bool = False):
        self.version = version
        self.strict = strict
        self.version_info = parse_version(version) if version is not None else None
        self._schema_validator = _VALIDATORS[strict]

    @property
    def title(self) -> str:
        title = f"Kubernetes {self.version or 'latest'}"
        if self.strict:
            title += " (strict)"
        return title

    def validate(self, path: str, content: bytes) -> List[Annotation]:
        try:
            text = content.decode("utf-8")
        except UnicodeDecodeError as e:
            return [self._annotation(path, "failure", f"File is not valid UTF-8: {e}")]

        try:
            documents = list(load_documents(text))
        except yaml.MarkedYAMLError as e:
            position = {}
            if e.problem_mark is not None:
                position = {
                    "start_line": e.problem_mark.line + 1,
                    "end_line": e.problem_mark.line + 1,
                }
            return [
                self._annotation(
                    path, "failure", f"Invalid YAML: {e.problem or e}", **position
                )
            ]
        except yaml.YAMLError as e:
            return [self._annotation(path, "failure", f"Invalid YAML: {e}")]
        except ValueError as e:
            # raised by the constructor for scalars like 2020-13-45
            return [self._annotation(path, "failure", f"Invalid YAML value: {e}")]

        annotations: List[Annotation] = []
        for node, data in documents:
            if data is None:
                continue
            annotations += self._validate_object(path, node, data, prefix=[])
        return annotations

    def _validate_object(
        self, path: str, root: yaml.Node, data: Any, prefix: List[Union[str, int]]
    ) -> List[Annotation]:
        node = locate(root, prefix)
        if not isinstance(data, dict):
            return [
                self._annotation(
                    path,
                    "failure",
                    f"{dotted(prefix) or 'Document'}: expected a Kubernetes object, "
                    f"found {type(data).__name__}",
                    **node_position(node),
                )
            ]

        kind = data.get("kind")
        items = data.get("items")
        if isinstance(kind, str) and kind.endswith("List") and isinstance(items, list):
            annotations = []
            for idx, item in enumerate(items):
                annotations += self._validate_object(
                    path, root, item, prefix + ["items", idx]
                )
            return annotations

        found = []
        for error in self._schema_validator.iter_errors(data):
            error_path = prefix + list(error.absolute_path)
            target = locate(root, error_path)
            if error.validator == "anyOf" and list(error.absolute_path) == ["metadata"]:
                message = "metadata.name or metadata.generateName is required"
            else:
                location = dotted(error_path)
                message = f"{location}: {error.message}" if location else error.message
            found.append((target.start_mark.line, message, target))

        annotations = [
            self._annotation(path, "failure", message, **node_position(target))
            for _, message, target in sorted(found, key=lambda f: (f[0], f[1]))
        ]

        lifecycle = self._check_api_version(path, root, data, prefix)
        if lifecycle is not None:
            annotations.append(lifecycle)
        return annotations

    def _check_api_version(
        self, path: str, root: yaml.Node, data: dict, prefix: List[Union[str, int]]
    ) -> Optional[Annotation]:
        api_version = data.get("apiVersion")
        kind = data.get("kind")
        if not isinstance(api_version, str) or not isinstance(kind, str):
            return None
        lifecycle = API_LIFECYCLE.get((api_version, kind)) or API_LIFECYCLE.get(
            (api_version, None)
        )
        if lifecycle is None:
            return None

        deprecated, removed = lifecycle
        position = node_position(locate(root, prefix + ["apiVersion"]))
        if self.version_info is None or self.version_info >= removed:
            return self._annotation(
                path,
                "failure",
                f"{kind} {api_version} is no longer served "
                f"since Kubernetes {removed[0]}.{removed[1]}",
                **position,
            )
        if self.version_info >= deprecated:
            return self._annotation(
                path,
                "warning",
                f"{kind} {api_version} is deprecated since Kubernetes "
                f"{deprecated[0]}.{deprecated[1]} and removed in "
                f"{removed[0]}.{removed[1]}",
                **position,
            )
        return None

    def _annotation(self, path: str, level: str, message: str, **position) -> Annotation:
        return Annotation(
            path=path,
            annotation_level=level,
            message=message,
            title=self.title,
            **position,
        )
