from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Callable, Iterable, Iterator, List, Optional

from sanic.log import logger

from kubevalidator.github.api import API, API_ERRORS
from kubevalidator.github.model import Annotation, PrFile, Repository
from kubevalidator.manifest import ManifestValidator
from kubevalidator.model import Schema, ValidatorConfig

ValidatorFactory = Callable[[Optional[str], bool], ManifestValidator]


@dataclass
class Candidate:
    path: str
    status: str
    schemas: List[Schema] = field(default_factory=lambda: [Schema()])
    content: Optional[bytes] = None
    load_error: Optional[str] = None
    # None until validated
    annotations: Optional[List[Annotation]] = None

    @property
    def validated(self) -> bool:
        return self.annotations is not None

    @property
    def is_valid(self) -> bool:
        return self.validated and not any(a.is_failure for a in self.annotations)

    @property
    def state(self) -> str:
        if self.load_error is not None:
            return "unreadable"
        if not self.validated:
            return "pending"
        if self.is_valid:
            return "valid"
        return "invalid"

    def load_error_annotation(self) -> Annotation:
        return Annotation(
            path=self.path,
            annotation_level="failure",
            title="Could not load file",
            message=f"Couldn't load {self.path}: {self.load_error}",
        )


class Candidates:
    """Changed files selected for validation, in pull request order.

    Validation runs in two phases. ``load_bytes`` fetches the content of
    every candidate and ``validate`` checks the ones that loaded. Both
    return the annotations they produced, in candidate order.
    """

    def __init__(self, items: Optional[Iterable[Candidate]] = None):
        self._items: List[Candidate] = list(items or [])

    def __iter__(self) -> Iterator[Candidate]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __getitem__(self, idx: int) -> Candidate:
        return self._items[idx]

    def __eq__(self, other) -> bool:
        if not isinstance(other, Candidates):
            return NotImplemented
        return self._items == other._items

    def __repr__(self) -> str:
        return f"Candidates({[c.path for c in self._items]})"

    @property
    def paths(self) -> List[str]:
        return [c.path for c in self._items]

    async def load_bytes(
        self, api: API, repo: Repository, ref: str
    ) -> List[Annotation]:
        async def load(candidate: Candidate) -> None:
            try:
                content = await api.get_content(repo, candidate.path, ref=ref)
                if content.type != "file":
                    raise ValueError(f"{candidate.path} is a {content.type}, not a file")
                candidate.content = content.decoded_bytes()
            except (*API_ERRORS, ValueError) as e:
                logger.warning("Loading %s failed: %s", candidate.path, e)
                candidate.content = None
                candidate.load_error = str(e) or type(e).__name__

        await asyncio.gather(*(load(c) for c in self._items))

        return [
            c.load_error_annotation() for c in self._items if c.load_error is not None
        ]

    def validate(
        self, validator_factory: ValidatorFactory = ManifestValidator
    ) -> List[Annotation]:
        annotations: List[Annotation] = []
        for candidate in self._items:
            if candidate.content is None:
                continue
            candidate.annotations = []
            for schema in candidate.schemas:
                validator = validator_factory(schema.version, schema.strict)
                candidate.annotations += validator.validate(
                    candidate.path, candidate.content
                )
            logger.debug(
                "%s: %d annotations", candidate.path, len(candidate.annotations)
            )
            annotations += candidate.annotations
        return annotations


def match_candidates(
    config: ValidatorConfig, changed_files: Iterable[PrFile]
) -> Candidates:
    candidates = []
    for changed in changed_files:
        if changed.status == "removed":
            logger.debug("- %s was removed, skipping", changed.filename)
            continue
        rule = config.rule_for(changed.filename)
        if rule is None:
            continue
        logger.debug("- %s matches glob '%s'", changed.filename, rule.glob)
        candidates.append(
            Candidate(
                path=changed.filename,
                status=changed.status,
                schemas=list(rule.schemas),
            )
        )
    return Candidates(candidates)
