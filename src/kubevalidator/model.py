from __future__ import annotations

from dataclasses import dataclass
from fnmatch import fnmatch
import io
from typing import List, Optional, Union

import pydantic
import yaml

from kubevalidator.github.model import Annotation
from kubevalidator.manifest import dotted, load_documents, locate, parse_version


class Model(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(extra="forbid", populate_by_name=True)


class Schema(Model):
    version: Optional[str] = None
    strict: bool = False

    @pydantic.field_validator("version", mode="before")
    @classmethod
    def version_is_string(cls, value):
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            raise ValueError(f"quote the version, e.g. version: \"{value}\"")
        return value

    @pydantic.field_validator("version")
    @classmethod
    def version_is_valid(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            parse_version(value)
        return value


class ManifestRule(Model):
    glob: str = pydantic.Field(min_length=1)
    schemas: List[Schema] = pydantic.Field(
        default_factory=lambda: [Schema()], min_length=1
    )

    def matches(self, filename: str) -> bool:
        return fnmatch(filename, self.glob)


class ValidatorConfigSpec(Model):
    manifests: List[ManifestRule] = pydantic.Field(min_length=1)


class ValidatorConfig(Model):
    api_version: Optional[str] = pydantic.Field(None, alias="apiVersion")
    kind: Optional[str] = None
    spec: ValidatorConfigSpec

    def rule_for(self, filename: str) -> Optional[ManifestRule]:
        for rule in self.spec.manifests:
            if rule.matches(filename):
                return rule
        return None


class InvalidConfig(Exception):
    raw_config: str
    source_url: str
    line: Optional[int]
    column: Optional[int]

    def __init__(self, *args, **kwargs):
        self.raw_config = kwargs.pop("raw_config")
        self.source_url = kwargs.pop("source_url")
        self.line = kwargs.pop("line", None)
        self.column = kwargs.pop("column", None)
        super().__init__(*args, **kwargs)

    def to_annotation(self, path: str) -> Annotation:
        return Annotation(
            path=path,
            annotation_level="failure",
            title="Invalid configuration",
            message=str(self),
            start_line=self.line,
            end_line=self.line,
            start_column=self.column,
            end_column=self.column,
        )


@dataclass(frozen=True)
class ConfigPresent:
    config: ValidatorConfig
    source: str


@dataclass(frozen=True)
class ConfigMissing:
    reason: str


@dataclass(frozen=True)
class ConfigMalformed:
    annotation: Annotation


ConfigOutcome = Union[ConfigPresent, ConfigMissing, ConfigMalformed]


def parse_config(raw_config: str, source_url: str) -> ValidatorConfig:
    try:
        data = yaml.safe_load(io.StringIO(raw_config))
    except yaml.MarkedYAMLError as e:
        mark = e.problem_mark
        raise InvalidConfig(
            f"Configuration is not valid YAML: {e.problem or e}",
            raw_config=raw_config,
            source_url=source_url,
            line=mark.line + 1 if mark is not None else None,
            column=mark.column + 1 if mark is not None else None,
        )
    except yaml.YAMLError as e:
        raise InvalidConfig(
            f"Configuration is not valid YAML: {e}",
            raw_config=raw_config,
            source_url=source_url,
        )
    except ValueError as e:
        raise InvalidConfig(
            f"Configuration contains an invalid value: {e}",
            raw_config=raw_config,
            source_url=source_url,
            line=1,
        ) from e

    if data is None:
        raise InvalidConfig(
            "Configuration file is empty", raw_config=raw_config, source_url=source_url
        )
    if not isinstance(data, dict):
        raise InvalidConfig(
            "Configuration must be a mapping",
            raw_config=raw_config,
            source_url=source_url,
            line=1,
        )

    try:
        return ValidatorConfig.model_validate(data)
    except pydantic.ValidationError as e:
        errors = e.errors()
        messages = [f"{dotted(err['loc']) or 'config'}: {err['msg']}" for err in errors]
        node, _ = next(load_documents(raw_config))
        line = locate(node, errors[0]["loc"]).start_mark.line + 1
        raise InvalidConfig(
            "\n".join(messages),
            raw_config=raw_config,
            source_url=source_url,
            line=line,
        )
