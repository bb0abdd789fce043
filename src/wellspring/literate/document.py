"""Literate documents as pipeline targets.

A literate document is Markdown with executable Python fragments:

    ```{python}
    summary = read_result("summary")
    summary["mean"]
    ```

Fragment options follow the language tag: ``{python echo=false}`` hides the
code in the rendered report, ``{python eval=false}`` shows it without
running it. Only evaluated fragments contribute dependencies.

Rendering runs every evaluated fragment in one shared namespace and writes
``<stem>.out.md`` next to the source: prose, code, and captured output.
"""

from __future__ import annotations

import contextlib
import io
import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from wellspring.foundation.errors import RenderError
from wellspring.incremental.commands import build_namespace, evaluate_source
from wellspring.incremental.hasher import digest_text
from wellspring.planning.references import analyze_source

logger = logging.getLogger(__name__)

# Opening fence: ```python, ```{python}, ```{python echo=false}
_FENCE_OPEN = re.compile(r"^(?P<fence>`{3,}|~{3,})\s*\{?\s*(?P<lang>python|py)\b(?P<opts>[^}]*)\}?\s*$")

OUTPUT_SUFFIX = ".out.md"


@dataclass(frozen=True, slots=True)
class Fragment:
    """An executable code fragment.

    Attributes:
        source: Python source of the fragment.
        line: 1-based line of the opening fence.
        echo: Whether the rendered report shows the code.
        evaluate: Whether the fragment runs.
    """

    source: str
    line: int
    echo: bool = True
    evaluate: bool = True


@dataclass(frozen=True, slots=True)
class Prose:
    """Text between fragments, copied verbatim."""

    text: str


def _parse_options(raw: str) -> dict[str, bool]:
    options: dict[str, bool] = {}
    for token in re.split(r"[,\s]+", raw.strip()):
        key, sep, value = token.partition("=")
        if sep:
            options[key.strip().lower()] = value.strip().lower() in ("true", "yes", "1")
    return options


def parse_blocks(text: str) -> tuple[Prose | Fragment, ...]:
    """Split document text into prose and fragments.

    An unterminated fragment runs to the end of the document.
    """
    blocks: list[Prose | Fragment] = []
    prose: list[str] = []
    lines = text.splitlines(keepends=True)
    i = 0

    while i < len(lines):
        match = _FENCE_OPEN.match(lines[i].rstrip("\n"))
        if not match:
            prose.append(lines[i])
            i += 1
            continue

        if prose:
            blocks.append(Prose("".join(prose)))
            prose = []

        fence = match.group("fence")
        options = _parse_options(match.group("opts"))
        start = i + 1
        j = start
        while j < len(lines) and not lines[j].strip().startswith(fence):
            j += 1

        blocks.append(
            Fragment(
                source="".join(lines[start:j]),
                line=i + 1,
                echo=options.get("echo", True),
                evaluate=options.get("eval", True),
            )
        )
        i = j + 1

    if prose:
        blocks.append(Prose("".join(prose)))
    return tuple(blocks)


@dataclass(frozen=True, slots=True)
class LiterateDocument:
    """A parsed literate document.

    Example:
        >>> doc = LiterateDocument.load(Path("report.md"))
        >>> sorted(doc.references())
        ['model', 'summary']
        >>> doc.render("report", read_result=store.load_value)
        [PosixPath('report.out.md')]
    """

    path: Path
    text: str
    blocks: tuple[Prose | Fragment, ...]

    @classmethod
    def load(cls, path: Path) -> LiterateDocument:
        """Read and parse a document.

        Raises:
            FileNotFoundError: If the document doesn't exist.
        """
        text = Path(path).read_text(encoding="utf-8")
        return cls.parse(text, Path(path))

    @classmethod
    def parse(cls, text: str, path: Path) -> LiterateDocument:
        return cls(path=path, text=text, blocks=parse_blocks(text))

    @property
    def fragments(self) -> list[Fragment]:
        return [b for b in self.blocks if isinstance(b, Fragment)]

    @property
    def source_hash(self) -> str:
        """Digest of the document source text."""
        return digest_text(self.text)

    @property
    def output_path(self) -> Path:
        """Where the rendered report is written."""
        return self.path.with_name(self.path.stem + OUTPUT_SUFFIX)

    def references(self) -> frozenset[str]:
        """Target names read by evaluated fragments.

        Raises:
            SyntaxError: If an evaluated fragment does not parse.
        """
        names: set[str] = set()
        for fragment in self.fragments:
            if fragment.evaluate:
                names |= analyze_source(fragment.source).result_calls
        return frozenset(names)

    def render(
        self,
        target_name: str,
        read_result: Callable[[str], Any],
        bindings: dict[str, Any] | None = None,
        artifacts: Iterable[Path] = (),
    ) -> list[Path]:
        """Execute fragments and write the rendered report.

        Args:
            target_name: Name of the owning target, for errors.
            read_result: Loader for upstream target values.
            bindings: Extra names (capabilities) available to fragments.
            artifacts: Further paths the fragments must produce.

        Returns:
            The report path followed by the declared artifacts.

        Raises:
            RenderError: If a fragment raises or an artifact is missing.
        """
        namespace = build_namespace(
            dict(bindings or {}), read_result, f"wellspring.literate.{target_name}"
        )
        out: list[str] = []

        for block in self.blocks:
            if isinstance(block, Prose):
                out.append(block.text)
                continue

            if block.echo:
                out.append(f"```python\n{block.source}```\n")
            if not block.evaluate:
                continue

            captured = io.StringIO()
            try:
                with contextlib.redirect_stdout(captured):
                    value = evaluate_source(
                        block.source, namespace, filename=f"{self.path}:{block.line}"
                    )
            except (Exception, SystemExit) as e:
                raise RenderError(
                    target_name,
                    f"fragment at {self.path.name}:{block.line} raised "
                    f"{type(e).__name__}: {e}",
                ) from e

            text = captured.getvalue()
            if value is not None:
                text += repr(value) + "\n"
            if text:
                out.append(f"```text\n{text}```\n")

        report = self.output_path
        try:
            report.write_text("".join(out), encoding="utf-8")
        except OSError as e:
            raise RenderError(target_name, f"cannot write {report}: {e}") from e

        emitted = [report]
        for artifact in artifacts:
            if not Path(artifact).is_file():
                raise RenderError(target_name, f"declared artifact was not produced: {artifact}")
            emitted.append(Path(artifact))

        logger.debug("Rendered %s to %s", self.path, report)
        return emitted
