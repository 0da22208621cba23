from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable


class CaddyfileSyntaxError(ValueError):
    pass


GLOBAL = "global"
SITE = "site"
SNIPPET = "snippet"
TRIVIA = "trivia"


@dataclass
class Block:
    """One top-level unit of a Caddyfile, kept as its exact source text."""

    kind: str
    text: str
    addresses: tuple[str, ...] = field(default_factory=tuple)
    name: str | None = None

    @property
    def is_blank(self) -> bool:
        return self.kind == TRIVIA and not self.text.strip()


def _tokens(line: str) -> list[tuple[str, bool]]:
    """
    Split one line into (token, quoted) pairs.
    Quoted and backtick strings are single tokens; '#' at a token start ends the line.
    """
    out: list[tuple[str, bool]] = []
    buf: list[str] = []
    quoted = False
    quote_char = ""
    was_quoted = False
    i = 0
    n = len(line)
    while i < n:
        ch = line[i]
        if quoted:
            if ch == "\\" and quote_char == '"' and i + 1 < n:
                buf.append(line[i + 1])
                i += 2
                continue
            if ch == quote_char:
                quoted = False
            else:
                buf.append(ch)
            i += 1
            continue

        if ch in ('"', "`"):
            quoted = True
            quote_char = ch
            was_quoted = True
            i += 1
            continue
        if ch.isspace():
            if buf or was_quoted:
                out.append(("".join(buf), was_quoted))
            buf = []
            was_quoted = False
            i += 1
            continue
        if ch == "#" and not buf and not was_quoted:
            break
        buf.append(ch)
        i += 1

    if buf or was_quoted:
        out.append(("".join(buf), was_quoted))
    return out


def _brace_delta(tokens: Iterable[tuple[str, bool]]) -> int:
    delta = 0
    for tok, quoted in tokens:
        if quoted:
            continue
        if tok == "{":
            delta += 1
        elif tok == "}":
            delta -= 1
    return delta


def split_addresses(header: str) -> tuple[str, ...]:
    parts = header.replace(",", " ").split()
    return tuple(p for p in parts if p)


def normalize_address(address: str) -> str:
    a = str(address or "").strip().lower()
    for scheme, port in (("https://", ":443"), ("http://", ":80")):
        if a.startswith(scheme):
            a = a[len(scheme):].rstrip("/")
            if a.endswith(port):
                a = a[: -len(port)]
            return a
    return a.rstrip("/")


def _classify_header(tokens: list[tuple[str, bool]], line_no: int) -> tuple[str, tuple[str, ...], str | None]:
    header_tokens = [t for t, _q in tokens[:-1]]
    if not header_tokens:
        return GLOBAL, (), None
    if len(header_tokens) == 1 and header_tokens[0].startswith("(") and header_tokens[0].endswith(")"):
        return SNIPPET, (), header_tokens[0][1:-1]
    addresses = split_addresses(" ".join(header_tokens))
    if not addresses:
        raise CaddyfileSyntaxError(f"line {line_no}: block without a site address")
    return SITE, addresses, None


def parse(text: str) -> "CaddyfileDocument":
    lines = text.splitlines(keepends=True)
    blocks: list[Block] = []
    i = 0
    while i < len(lines):
        line = lines[i]
        tokens = _tokens(line)
        if not tokens:
            blocks.append(Block(kind=TRIVIA, text=line))
            i += 1
            continue

        last, last_quoted = tokens[-1]
        if last != "{" or last_quoted:
            if _brace_delta(tokens) < 0:
                raise CaddyfileSyntaxError(f"line {i + 1}: unexpected '}}' at top level")
            blocks.append(Block(kind=TRIVIA, text=line))
            i += 1
            continue

        kind, addresses, name = _classify_header(tokens, i + 1)
        start = i
        depth = _brace_delta(tokens)
        i += 1
        while depth > 0 and i < len(lines):
            depth += _brace_delta(_tokens(lines[i]))
            i += 1
        if depth != 0:
            raise CaddyfileSyntaxError(f"line {start + 1}: block is never closed")
        blocks.append(Block(kind=kind, text="".join(lines[start:i]), addresses=addresses, name=name))

    return CaddyfileDocument(blocks)


class CaddyfileDocument:
    """Ordered top-level blocks of a Caddyfile; serialize() reproduces the source exactly."""

    def __init__(self, blocks: list[Block] | None = None):
        self.blocks: list[Block] = list(blocks or [])

    def serialize(self) -> str:
        return "".join(b.text for b in self.blocks)

    def sites(self) -> list[Block]:
        return [b for b in self.blocks if b.kind == SITE]

    def site_addresses(self) -> list[str]:
        out: list[str] = []
        for b in self.sites():
            out.extend(b.addresses)
        return out

    def global_block(self) -> Block | None:
        for b in self.blocks:
            if b.kind == GLOBAL:
                return b
        return None

    def find_site(self, address: str) -> int | None:
        target = normalize_address(address)
        for idx, b in enumerate(self.blocks):
            if b.kind != SITE:
                continue
            if any(normalize_address(a) == target for a in b.addresses):
                return idx
        return None

    def has_site(self, address: str) -> bool:
        return self.find_site(address) is not None

    def append_site(self, block_text: str) -> None:
        new_doc = parse(block_text)
        added = new_doc.sites()
        if len(added) != 1:
            raise CaddyfileSyntaxError("site template must contain exactly one site block")
        for address in added[0].addresses:
            if self.has_site(address):
                raise ValueError(f"site already present: {address}")

        if self.blocks and not self.blocks[-1].text.endswith("\n"):
            self.blocks[-1] = Block(
                kind=self.blocks[-1].kind,
                text=self.blocks[-1].text + "\n",
                addresses=self.blocks[-1].addresses,
                name=self.blocks[-1].name,
            )
        if self.blocks:
            self.blocks.append(Block(kind=TRIVIA, text="\n"))
        self.blocks.extend(new_doc.blocks)

    def remove_site(self, address: str) -> Block:
        """
        Drop ``address`` from the document.
        A block serving several addresses keeps its body and loses only that address.
        """
        idx = self.find_site(address)
        if idx is None:
            raise KeyError(address)
        block = self.blocks[idx]
        target = normalize_address(address)
        remaining = [a for a in block.addresses if normalize_address(a) != target]
        if remaining:
            self.blocks[idx] = _rewrite_header(block, remaining)
            return block

        del self.blocks[idx]
        if idx > 0 and self.blocks[idx - 1].is_blank:
            del self.blocks[idx - 1]
        return block

    def has_marker(self, marker: str) -> bool:
        g = self.global_block()
        return g is not None and marker in g.text

    def has_snippet(self, name: str) -> bool:
        return any(b.kind == SNIPPET and b.name == name for b in self.blocks)

    def insert_after_global(self, block_text: str) -> None:
        """Place a top-level block right after the global options block (or first)."""
        new_doc = parse(block_text if block_text.endswith("\n") else block_text + "\n")
        idx = 0
        for i, b in enumerate(self.blocks):
            if b.kind == GLOBAL:
                idx = i + 1
                break
        insert = list(new_doc.blocks)
        if idx > 0:
            insert = [Block(kind=TRIVIA, text="\n")] + insert
        elif self.blocks:
            insert = insert + [Block(kind=TRIVIA, text="\n")]
        self.blocks[idx:idx] = insert

    def add_import_to_sites(self, snippet: str) -> int:
        """Add ``import <snippet>`` as the first directive of every site lacking it."""
        changed = 0
        for idx, b in enumerate(self.blocks):
            if b.kind != SITE:
                continue
            lines = b.text.splitlines(keepends=True)
            if any([t for t, _q in _tokens(ln)] == ["import", snippet] for ln in lines[1:]):
                continue
            indent = "    "
            if len(lines) > 2:
                second = lines[1]
                stripped = second.lstrip()
                if stripped and not stripped.startswith("}"):
                    indent = second[: len(second) - len(stripped)]
            header = lines[0] if lines[0].endswith("\n") else lines[0] + "\n"
            text = header + f"{indent}import {snippet}\n" + "".join(lines[1:])
            self.blocks[idx] = Block(kind=SITE, text=text, addresses=b.addresses)
            changed += 1
        return changed

    def merge_global(self, directives: str) -> None:
        """Insert option lines into the global options block, creating it first when missing."""
        body = directives if directives.endswith("\n") else directives + "\n"
        for idx, b in enumerate(self.blocks):
            if b.kind != GLOBAL:
                continue
            lines = b.text.splitlines(keepends=True)
            closing = lines[-1]
            head = "".join(lines[:-1])
            if head and not head.endswith("\n"):
                head += "\n"
            self.blocks[idx] = Block(kind=GLOBAL, text=head + body + closing)
            return

        new_blocks = [Block(kind=GLOBAL, text="{\n" + body + "}\n")]
        if self.blocks:
            new_blocks.append(Block(kind=TRIVIA, text="\n"))
        self.blocks = new_blocks + self.blocks


def _rewrite_header(block: Block, addresses: list[str]) -> Block:
    first, sep, rest = block.text.partition("\n")
    indent = first[: len(first) - len(first.lstrip())]
    new_first = f"{indent}{', '.join(addresses)} {{"
    return Block(kind=SITE, text=new_first + sep + rest, addresses=tuple(addresses))
