"""
Label to template resolution.
"""

import logging
import threading
from typing import Iterator, List, Optional

from models import Template, UsageMode

logger = logging.getLogger(__name__)


def label_matches(template: Template, label: Optional[str]) -> bool:
    """
    Check whether a workload label selects a template.

    NORMAL templates take any label, including none. EXCLUSIVE templates
    only take a non-empty label equal (ignoring case) to the template's full
    label string or to one of its labels.
    """
    wanted = (label or "").strip()
    if template.usage_mode is UsageMode.NORMAL:
        return True
    if not wanted:
        return False
    wanted = wanted.lower()
    if wanted == template.labels.strip().lower():
        return True
    return wanted in (atom.lower() for atom in template.label_atoms)


class TemplateRegistry:
    """Ordered, thread-safe collection of a fleet's templates."""

    def __init__(self, templates: Optional[List[Template]] = None):
        self._lock = threading.Lock()
        self._templates: List[Template] = list(templates or [])

    def __iter__(self) -> Iterator[Template]:
        with self._lock:
            return iter(list(self._templates))

    def __len__(self) -> int:
        with self._lock:
            return len(self._templates)

    def add(self, template: Template) -> None:
        with self._lock:
            if any(t.name == template.name for t in self._templates):
                raise ValueError(
                    f"Template {template.name} already exists in fleet {template.fleet_name}"
                )
            self._templates.append(template)

    def remove(self, name: str) -> Optional[Template]:
        with self._lock:
            for i, template in enumerate(self._templates):
                if template.name == name:
                    return self._templates.pop(i)
        return None

    def get(self, name: str) -> Optional[Template]:
        """Look a template up by name, regardless of eligibility."""
        with self._lock:
            for template in self._templates:
                if template.name == name:
                    return template
        return None

    def matching(self, label: Optional[str]) -> Optional[Template]:
        """First template in declaration order matching the label."""
        for template in self:
            if label_matches(template, label):
                return template
        return None

    def resolve(self, label: Optional[str]) -> Optional[Template]:
        """First eligible template matching the label, or None."""
        for template in self:
            if not label_matches(template, label):
                continue
            if not template.is_eligible():
                logger.debug(
                    f"Skipping template {template.name}: "
                    f"{'disabled' if template.disabled else 'not verified'}"
                )
                continue
            return template
        return None
