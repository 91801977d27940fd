"""
Markdown → HTML rendering for stage content, question text and explanations.

Block constructs are recognised line by line with an ordered list of block
rules; the text inside them goes through format_inline, which applies a fixed
sequence of regex substitutions. Nested or unbalanced emphasis such as
``*a**b*c**`` has no guaranteed rendering.
"""
import re
from typing import Any, Callable, List, Mapping, Optional, Tuple

from schooltest.images import resolve_image

ImageMap = Optional[Mapping[str, Any]]

# ---------------------------------------------------------------------------
# Inline spans
# ---------------------------------------------------------------------------

_BACKSLASH_RE = re.compile(r'\\([\\`*_{}\[\]()#+\-.!~|])')
_IMAGE_RE = re.compile(r'!\[([^\]]*)\]\(([^)\s]+)(?:\s+"([^"]*)")?\)')
# targets and titles end up in attributes, so they may not hold a stashed tag
_LINK_RE = re.compile(r'\[([^\]]+)\]\(([^)\s\x00]+)(?:\s+"([^"\x00]*)")?\)')
_AUTOLINK_RE = re.compile(r'&lt;(https?://[^\x00]+?)&gt;')
_CODE_RE = re.compile(r'`([^`]+)`')
_EMPHASIS = (
    (re.compile(r'\*\*\*(.+?)\*\*\*'), r'<strong><em>\1</em></strong>'),
    (re.compile(r'\*\*(.+?)\*\*'), r'<strong>\1</strong>'),
    (re.compile(r'__(.+?)__'), r'<strong>\1</strong>'),
    (re.compile(r'\*(.+?)\*'), r'<em>\1</em>'),
    (re.compile(r'_(.+?)_'), r'<em>\1</em>'),
    (re.compile(r'~~(.+?)~~'), r'<del>\1</del>'),
)
_LINE_BREAK_RE = re.compile(r' {2,}\n')

# Generated tags are parked behind \x00<n>\x00 until every rule has run
_PLACEHOLDER_RE = re.compile('\x00(\\d+)\x00')


def escape_html(text: str) -> str:
    return (text.replace('&', '&amp;')
                .replace('<', '&lt;')
                .replace('>', '&gt;')
                .replace('"', '&quot;'))


def _escape_text(text: str) -> str:
    return text.replace('&', '&amp;').replace('<', '&lt;').replace('>', '&gt;')


def _attr(value: str) -> str:
    # text is already &/</> escaped by the time it lands in an attribute
    return value.replace('"', '&quot;')


class _Stash:
    def __init__(self):
        self.fragments: List[str] = []

    def put(self, fragment: str) -> str:
        self.fragments.append(fragment)
        return f'\x00{len(self.fragments) - 1}\x00'

    def restore(self, text: str) -> str:
        # a fragment only ever points at fragments stashed before it
        return _PLACEHOLDER_RE.sub(lambda m: self.restore(self.fragments[int(m.group(1))]), text)


def format_inline(text: str, images: ImageMap = None) -> str:
    """Convert the inline markdown of one block's text to an HTML fragment."""
    if not text:
        return ''
    stash = _Stash()
    result = _escape_text(text.replace('\x00', '�'))

    result = _BACKSLASH_RE.sub(lambda m: f'&#{ord(m.group(1))};', result)

    def image(m):
        alt, target, title = m.group(1), m.group(2), m.group(3)
        src = resolve_image(target, images)
        if src != target:
            src = escape_html(src)
        title_attr = f' title="{_attr(title)}"' if title is not None else ''
        return stash.put(f'<img src="{_attr(src)}" alt="{_attr(alt)}"{title_attr} class="md-img" />')

    result = _IMAGE_RE.sub(image, result)

    def link(m):
        label, href, title = m.group(1), m.group(2), m.group(3)
        title_attr = f' title="{_attr(title)}"' if title is not None else ''
        opening = stash.put(
            f'<a href="{_attr(href)}"{title_attr} target="_blank" rel="noopener" class="md-link">'
        )
        return opening + label + stash.put('</a>')

    result = _LINK_RE.sub(link, result)
    result = _AUTOLINK_RE.sub(
        lambda m: stash.put(
            f'<a href="{_attr(m.group(1))}" target="_blank" rel="noopener" class="md-link">'
            f'{m.group(1)}</a>'
        ),
        result,
    )

    result = _CODE_RE.sub(lambda m: stash.put(f'<code class="md-code">{m.group(1)}</code>'), result)

    for pattern, replacement in _EMPHASIS:
        result = pattern.sub(replacement, result)

    result = _LINE_BREAK_RE.sub('<br/>', result)
    return stash.restore(result)


# ---------------------------------------------------------------------------
# Blocks
# ---------------------------------------------------------------------------

_FENCE = '```'
_TABLE_SEPARATOR_RE = re.compile(r'^\|?\s*:?-+:?\s*(\|\s*:?-+:?\s*)*\|?\s*$')
_CELL_SPLIT_RE = re.compile(r'(?<!\\)\|')
_RULE_RE = re.compile(r'^\s*(?:-{3,}|\*{3,}|_{3,})\s*$')
_HEADING_RE = re.compile(r'^(#{1,6})\s+(.+?)(?:\s+\{#([\w-]+)\})?\s*$')
_QUOTE_PREFIX_RE = re.compile(r'^> ?')
_TASK_RE = re.compile(r'^[-*+]\s+\[([ xX])\]\s*(.*)$')
_BULLET_RE = re.compile(r'^[-*+]\s+(.*)$')
_ORDERED_RE = re.compile(r'^\d+\.\s+(.*)$')

MAX_QUOTE_DEPTH = 32

# (html, index of the first line after the block)
BlockResult = Tuple[str, int]


def _is_fence(lines, i):
    return lines[i].startswith(_FENCE)


def _is_table(lines, i):
    return '|' in lines[i] and i + 1 < len(lines) and bool(_TABLE_SEPARATOR_RE.match(lines[i + 1]))


def _is_rule(lines, i):
    return bool(_RULE_RE.match(lines[i]))


def _is_heading(lines, i):
    return bool(_HEADING_RE.match(lines[i]))


def _is_quote(lines, i):
    return lines[i].startswith('>')


def _is_task(lines, i):
    return bool(_TASK_RE.match(lines[i]))


def _is_bullet(lines, i):
    return bool(_BULLET_RE.match(lines[i])) and not _is_task(lines, i)


def _is_ordered(lines, i):
    return bool(_ORDERED_RE.match(lines[i]))


def _fenced_code(lines, i, images) -> BlockResult:
    lang = lines[i][len(_FENCE):].strip()
    i += 1
    code = []
    while i < len(lines) and not lines[i].startswith(_FENCE):
        code.append(lines[i])
        i += 1
    # skip the closing fence (a missing one just runs to the end)
    i += 1
    html = (f'<pre class="md-pre"><code class="md-codeblock" data-lang="{escape_html(lang)}">'
            f'{escape_html(chr(10).join(code))}</code></pre>')
    return html, i


def _split_row(line: str) -> List[str]:
    row = line.strip()
    if row.startswith('|'):
        row = row[1:]
    if row.endswith('|') and not row.endswith('\\|'):
        row = row[:-1]
    return [cell.strip() for cell in _CELL_SPLIT_RE.split(row)]


def _alignment(cell: str) -> str:
    if cell.startswith(':') and cell.endswith(':'):
        return 'center'
    if cell.endswith(':'):
        return 'right'
    return 'left'


def _table(lines, i, images) -> BlockResult:
    header = _split_row(lines[i])
    aligns = [_alignment(cell) for cell in _split_row(lines[i + 1])]
    i += 2
    rows = []
    while i < len(lines) and '|' in lines[i]:
        rows.append(_split_row(lines[i]))
        i += 1

    def cells(values, tag):
        return ''.join(
            f'<{tag} style="text-align:{aligns[j] if j < len(aligns) else "left"}">'
            f'{format_inline(value, images)}</{tag}>'
            for j, value in enumerate(values)
        )

    body = ''.join(f'<tr>{cells(row, "td")}</tr>' for row in rows)
    html = (f'<table class="md-table"><thead><tr>{cells(header, "th")}</tr></thead>'
            f'<tbody>{body}</tbody></table>')
    return html, i


def _rule(lines, i, images) -> BlockResult:
    return '<hr class="md-hr"/>', i + 1


def _heading(lines, i, images) -> BlockResult:
    m = _HEADING_RE.match(lines[i])
    level = len(m.group(1))
    anchor = f' id="{escape_html(m.group(3))}"' if m.group(3) else ''
    html = f'<h{level} class="md-h{level}"{anchor}>{format_inline(m.group(2), images)}</h{level}>'
    return html, i + 1


def _blockquote(lines, i, images, depth=0) -> BlockResult:
    quoted = []
    while i < len(lines) and (lines[i].startswith('>') or (quoted and lines[i].strip())):
        quoted.append(_QUOTE_PREFIX_RE.sub('', lines[i], count=1))
        i += 1
    if depth >= MAX_QUOTE_DEPTH:
        # deeper markers stay literal text
        inner = f'<p class="md-p">{format_inline(chr(10).join(quoted), images)}</p>'
    else:
        inner = _render_lines(quoted, images, depth + 1)
    return f'<blockquote class="md-blockquote">{inner}</blockquote>', i


def _task_list(lines, i, images) -> BlockResult:
    items = []
    while i < len(lines) and _is_task(lines, i):
        m = _TASK_RE.match(lines[i])
        checked = ' checked' if m.group(1) != ' ' else ''
        items.append(f'<li class="md-task"><input type="checkbox"{checked} disabled />'
                     f'{format_inline(m.group(2), images)}</li>')
        i += 1
    return f'<ul class="md-tasklist">{"".join(items)}</ul>', i


def _bullet_list(lines, i, images) -> BlockResult:
    items = []
    while i < len(lines) and _is_bullet(lines, i):
        items.append(f'<li>{format_inline(_BULLET_RE.match(lines[i]).group(1), images)}</li>')
        i += 1
    return f'<ul class="md-ul">{"".join(items)}</ul>', i


def _ordered_list(lines, i, images) -> BlockResult:
    items = []
    while i < len(lines) and _is_ordered(lines, i):
        items.append(f'<li>{format_inline(_ORDERED_RE.match(lines[i]).group(1), images)}</li>')
        i += 1
    return f'<ol class="md-ol">{"".join(items)}</ol>', i


# First match wins; order matters (a rule line of '***' must not become a list)
BLOCK_RULES: Tuple[Tuple[Callable, Callable], ...] = (
    (_is_fence, _fenced_code),
    (_is_table, _table),
    (_is_rule, _rule),
    (_is_heading, _heading),
    (_is_quote, _blockquote),
    (_is_task, _task_list),
    (_is_bullet, _bullet_list),
    (_is_ordered, _ordered_list),
)


def _starts_block(lines, i) -> bool:
    return any(matches(lines, i) for matches, _ in BLOCK_RULES)


def _paragraph(lines, i, images) -> BlockResult:
    para = [lines[i]]
    i += 1
    while i < len(lines) and lines[i].strip() and not _starts_block(lines, i):
        para.append(lines[i])
        i += 1
    return f'<p class="md-p">{format_inline(chr(10).join(para), images)}</p>', i


def render_markdown(document: str, images: ImageMap = None) -> str:
    """
    Render a whole markdown document to concatenated HTML blocks.

    images maps image ids to stored images so that db-image:// references
    resolve to embedded data. Never raises on malformed markdown.
    """
    if not document:
        return ''
    lines = document.replace('\r\n', '\n').replace('\r', '\n').split('\n')
    return _render_lines(lines, images, 0)


def _render_lines(lines: List[str], images: ImageMap, depth: int) -> str:
    blocks = []
    i = 0
    while i < len(lines):
        for matches, consume in BLOCK_RULES:
            if matches(lines, i):
                if consume is _blockquote:
                    html, i = _blockquote(lines, i, images, depth)
                else:
                    html, i = consume(lines, i, images)
                blocks.append(html)
                break
        else:
            if not lines[i].strip():
                i += 1
                continue
            html, i = _paragraph(lines, i, images)
            blocks.append(html)
    return '\n'.join(blocks)
