import os
import fnmatch
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, List, Optional, Set, Tuple

from .. import config


@dataclass
class WalkEntry:
    """
    One item yielded by the walker.

    kind: 'dir' (album candidate), 'file' (media candidate) or 'error'.
    parent: the album path this entry belongs under (None for the root).
    """
    kind: str
    path: Path
    parent: Optional[Path]
    stat: Optional[os.stat_result] = None
    error: Optional[str] = None
    # JPEG sibling of a RAW file, used to decode the RAW for derivatives
    counterpart: Optional[Path] = None


@dataclass
class IgnoreRules:
    """
    Glob rules in .gitignore spirit: later rules override earlier ones,
    '!' negates, a trailing '/' restricts a rule to directories, and a rule
    containing '/' is matched against the path relative to where it was defined.
    """
    rules: List[Tuple[str, bool, bool, Path]] = field(default_factory=list)

    def extended(self, lines: List[str], base: Path) -> "IgnoreRules":
        new_rules = list(self.rules)
        for raw in lines:
            line = raw.strip()
            if not line or line.startswith('#'):
                continue
            negate = line.startswith('!')
            if negate:
                line = line[1:]
            dir_only = line.endswith('/')
            line = line.rstrip('/')
            if line:
                new_rules.append((line, negate, dir_only, base))
        return IgnoreRules(new_rules)

    def is_ignored(self, path: Path, is_dir: bool) -> bool:
        ignored = False
        for pattern, negate, dir_only, base in self.rules:
            if dir_only and not is_dir:
                continue
            if '/' in pattern:
                try:
                    target = path.relative_to(base).as_posix()
                except ValueError:
                    continue
                matched = fnmatch.fnmatchcase(target, pattern.lstrip('/'))
            else:
                matched = fnmatch.fnmatchcase(path.name, pattern)
            if matched:
                ignored = not negate
        return ignored


class DirectoryWalker:
    """
    Depth-first walker using os.scandir. Directories are yielded before
    anything inside them. Holds no state between walks.
    """

    def __init__(self,
                 exclude_patterns: Optional[List[str]] = None,
                 ignore_hidden: bool = True,
                 follow_symlinks: bool = True,
                 skip_raw_counterparts: bool = True):
        self.exclude_patterns = list(exclude_patterns or [])
        self.ignore_hidden = ignore_hidden
        self.follow_symlinks = follow_symlinks
        self.skip_raw_counterparts = skip_raw_counterparts

    def walk(self, root: Path) -> Iterator[WalkEntry]:
        base_rules = IgnoreRules().extended(self.exclude_patterns, root)
        visited: Set[str] = set()
        stack: List[Tuple[Path, Optional[Path], IgnoreRules]] = [(root, None, base_rules)]

        while stack:
            current, parent, rules = stack.pop()

            real = os.path.realpath(current)
            if real in visited:
                logging.warning(f"Symlink loop detected, skipping: {current} -> {real}")
                yield WalkEntry('error', current, parent, error=f"symlink loop (already visited {real})")
                continue
            visited.add(real)

            try:
                with os.scandir(current) as it:
                    entries = list(it)
            except OSError as e:
                logging.warning(f"Cannot read directory {current}: {e}")
                yield WalkEntry('error', current, parent, error=f"unreadable directory: {e.strerror or e}")
                continue

            rules = rules.extended(self._read_ignore_file(current), current)

            # Sort for stable traversal order
            entries.sort(key=lambda e: e.name.lower())

            dirs: List[Path] = []
            files: List[Tuple[Path, Optional[os.stat_result]]] = []
            errors: List[WalkEntry] = []
            for e in entries:
                if self.ignore_hidden and e.name.startswith('.'):
                    continue
                path = Path(e.path)
                try:
                    is_dir = e.is_dir(follow_symlinks=self.follow_symlinks)
                    is_file = not is_dir and e.is_file(follow_symlinks=self.follow_symlinks)
                except OSError as err:
                    errors.append(WalkEntry('error', path, current, error=f"cannot stat: {err}"))
                    continue

                if rules.is_ignored(path, is_dir):
                    logging.debug(f"Ignored by rule: {path}")
                    continue

                if is_dir:
                    dirs.append(path)
                elif is_file and config.media_kind(path) is not None:
                    try:
                        files.append((path, e.stat(follow_symlinks=self.follow_symlinks)))
                    except OSError as err:
                        errors.append(WalkEntry('error', path, current, error=f"cannot stat: {err}"))

            yield WalkEntry('dir', current, parent)
            yield from errors
            yield from self._file_entries(current, files)

            # Push dirs to stack (reversed so we process A before Z)
            for d in reversed(dirs):
                stack.append((d, current, rules))

    def _file_entries(self, directory: Path,
                      files: List[Tuple[Path, Optional[os.stat_result]]]) -> Iterator[WalkEntry]:
        counterparts = {}
        if self.skip_raw_counterparts:
            raw_stems = {p.stem.lower() for p, _ in files if config.EXT_TO_TYPE.get(p.suffix.lower()) == 'raw'}
            for p, _ in files:
                if config.EXT_TO_TYPE.get(p.suffix.lower()) == 'jpeg' and p.stem.lower() in raw_stems:
                    counterparts[p.stem.lower()] = p

        for path, st in files:
            stem = path.stem.lower()
            ftype = config.EXT_TO_TYPE.get(path.suffix.lower())
            if ftype == 'jpeg' and counterparts.get(stem) == path:
                logging.debug(f"Skipping RAW counterpart JPEG: {path}")
                continue
            counterpart = counterparts.get(stem) if ftype == 'raw' else None
            yield WalkEntry('file', path, directory, stat=st, counterpart=counterpart)

    def _read_ignore_file(self, directory: Path) -> List[str]:
        ignore_file = directory / config.IGNORE_FILE_NAME
        try:
            with ignore_file.open('r', encoding='utf-8') as f:
                return f.readlines()
        except FileNotFoundError:
            return []
        except OSError as e:
            logging.warning(f"Cannot read ignore file {ignore_file}: {e}")
            return []
