# core/proxy/path_rewriter.py
"""Переписывание пути запроса перед проксированием"""

import re
import logging
from typing import Dict, List, Tuple

logger = logging.getLogger(__name__)


class PathRewriter:
    """
    Переписывает путь по упорядоченным правилам {regex: замена}.

    Правила проверяются в порядке добавления: первое совпавшее применяется
    один раз, остальные пропускаются.
    """

    def __init__(self, rules: Dict[str, str]):
        """
        Args:
            rules: {шаблон: замена}, например {'^/proxy': ''}

        Raises:
            re.error: шаблон не компилируется
            TypeError: замена не является строкой
        """
        self.rules: List[Tuple[re.Pattern, str]] = []

        for pattern, replacement in rules.items():
            if not isinstance(replacement, str):
                raise TypeError(
                    f"Replacement for {pattern!r} must be a string, got {type(replacement).__name__}"
                )
            self.rules.append((re.compile(pattern), replacement))

        logger.debug(f"PathRewriter initialized with {len(self.rules)} rule(s)")

    def rewrite(self, path: str) -> str:
        """Возвращает переписанный путь (всегда начинается с '/')"""
        result = path

        for regex, replacement in self.rules:
            if regex.search(path):
                result = regex.sub(replacement, path, count=1)
                logger.debug(f"Rewrote path: {path} -> {result}")
                break

        if not result.startswith('/'):
            result = '/' + result

        return result

    def __len__(self) -> int:
        return len(self.rules)
