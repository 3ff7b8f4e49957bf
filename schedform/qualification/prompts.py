import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from schedform.qualification.scoring import AnswerContext, format_answers

logger = logging.getLogger("qualification.prompts")


@dataclass
class PromptTemplate:
    name: str
    version: str
    system: str
    template: str
    path: Path

    @property
    def label(self) -> str:
        return f"{self.name}@v{self.version}"

    def render(
        self,
        *,
        name: Optional[str],
        email: Optional[str],
        answers: List[AnswerContext],
        rule_score: Optional[float],
        slots: Optional[List[Dict[str, Any]]] = None,
    ) -> str:
        slots_block = ""
        if slots:
            listed = "\n".join(f"- {slot['slot_id']}: {slot['start_time']}" for slot in slots)
            slots_block = f"\nCandidate meeting slots (pick up to 3 slot_ids):\n{listed}\n"
        body = self.template.format(
            name=name or "Unknown",
            email=email or "unknown",
            rule_score="n/a" if rule_score is None else f"{rule_score:g}",
            answers=format_answers(answers) or "- (no answers)",
            slots_block=slots_block,
        )
        return f"{self.system}\n\n{body}" if self.system else body


def _load_yaml(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


@lru_cache(maxsize=8)
def load_prompt(path: Path) -> PromptTemplate:
    data = _load_yaml(path)
    try:
        template = PromptTemplate(
            name=data["name"],
            version=str(data.get("version", "1")),
            system=data.get("system", ""),
            template=data["template"],
            path=path,
        )
    except KeyError as exc:
        raise ValueError(f"Invalid prompt template {path}: missing {exc}") from exc
    logger.info("Loaded prompt %s from %s", template.label, path)
    return template
