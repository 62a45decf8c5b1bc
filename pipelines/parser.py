"""Document parsing for DocManifest.

Turns raw HTML, Markdown or plain text into a ParsedDocument: a title, an
optional section label, metadata, and normalized plain text. Parsing is best
effort and never raises on malformed markup.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup
from markdownify import markdownify

logger = logging.getLogger(__name__)

BOILERPLATE_TAGS = ['script', 'style', 'nav', 'header', 'footer', 'noscript', 'iframe']

MAIN_CONTENT_SELECTORS = [
    'main',
    'article',
    '[role="main"]',
    '.content',
    '.main-content',
    '#content',
    '#main-content',
    '.documentation',
    '.docs-content',
    '.markdown-body',
]

UNTITLED = 'Untitled'

FENCED_BLOCK = re.compile(r'```[^\n]*\n?(.*?)```', re.DOTALL)


@dataclass
class ParsedDocument:
    """Normalized output of the parser."""
    title: str
    text: str
    section: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class DocumentParser:
    """Converts HTML, Markdown and plain text into ParsedDocument records."""

    def __init__(self,
                 extract_metadata: bool = True,
                 clean_whitespace: bool = True,
                 preserve_code_blocks: bool = True):
        self.extract_metadata = extract_metadata
        self.clean_whitespace = clean_whitespace
        self.preserve_code_blocks = preserve_code_blocks

    def parse_html(self, html: str, url: Optional[str] = None) -> ParsedDocument:
        """Parse an HTML page, keeping only its main content."""
        try:
            soup = BeautifulSoup(html or '', 'html.parser')

            for tag in soup(BOILERPLATE_TAGS):
                tag.decompose()

            title = self._extract_title(soup)
            section = self._extract_section(soup)
            metadata = self._extract_metadata(soup, url) if self.extract_metadata else {}

            root = self._find_main_content(soup)
            markdown = markdownify(
                str(root),
                heading_style='ATX',
                bullets='-',
                escape_underscores=False,
                escape_asterisks=False,
            ) if root is not None else ''

            if not self.preserve_code_blocks:
                markdown = FENCED_BLOCK.sub('', markdown)

            text = self.normalize_plain_text(markdown)
            return ParsedDocument(
                title=title,
                text=self._clean_text(text) if self.clean_whitespace else text,
                section=section,
                metadata=metadata,
            )
        except Exception as e:
            logger.warning(f"Failed to parse HTML from {url or 'unknown source'}: {e}")
            return self._degraded(html, url)

    def parse_markdown(self, markdown: str, url: Optional[str] = None) -> ParsedDocument:
        lines = (markdown or '').split('\n')
        text = self.normalize_plain_text(markdown or '')
        return ParsedDocument(
            title=self._title_from_markdown(lines) or UNTITLED,
            text=self._clean_text(text) if self.clean_whitespace else text,
            section=self._section_from_markdown(lines),
            metadata={'url': url, 'content_type': 'markdown'},
        )

    def parse_text(self, text: str, url: Optional[str] = None) -> ParsedDocument:
        lines = (text or '').split('\n')
        first_line = next((line.strip() for line in lines if line.strip()), '')
        title = self._title_from_markdown(lines) or first_line or UNTITLED
        return ParsedDocument(
            title=title,
            text=self._clean_text(text or '') if self.clean_whitespace else (text or ''),
            section=self._section_from_markdown(lines),
            metadata={'url': url, 'content_type': 'text'},
        )

    def _extract_title(self, soup: BeautifulSoup) -> str:
        og_title = soup.find('meta', attrs={'property': 'og:title'})
        if og_title and og_title.get('content', '').strip():
            return og_title['content'].strip()

        h1 = soup.find('h1')
        if h1 and h1.get_text(strip=True):
            return h1.get_text(' ', strip=True)

        if soup.title and soup.title.get_text(strip=True):
            return soup.title.get_text(strip=True)

        return UNTITLED

    def _extract_section(self, soup: BeautifulSoup) -> Optional[str]:
        breadcrumbs = soup.select('.breadcrumb, .breadcrumbs, [class*="breadcrumb"]')
        if breadcrumbs:
            crumb_text = breadcrumbs[-1].get_text(' ', strip=True)
            parts = [part.strip() for part in re.split(r'[>/]', crumb_text) if part.strip()]
            if parts:
                return ' > '.join(parts)

        h2 = soup.find('h2')
        if h2 and h2.get_text(strip=True):
            return h2.get_text(' ', strip=True)

        return None

    def _find_main_content(self, soup: BeautifulSoup):
        for selector in MAIN_CONTENT_SELECTORS:
            element = soup.select_one(selector)
            if element is not None:
                return element
        return soup.body or soup

    def _extract_metadata(self, soup: BeautifulSoup, url: Optional[str]) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {'url': url}

        for meta in soup.find_all('meta'):
            name = meta.get('name') or meta.get('property')
            content = meta.get('content')
            if name and content:
                metadata[name] = content

        canonical = soup.find('link', rel='canonical')
        if canonical and canonical.get('href'):
            metadata['canonical'] = canonical['href']

        return metadata

    @staticmethod
    def _title_from_markdown(lines: List[str]) -> Optional[str]:
        for line in lines:
            stripped = line.strip()
            if stripped.startswith('# '):
                return stripped[2:].strip()
        return None

    @staticmethod
    def _section_from_markdown(lines: List[str]) -> Optional[str]:
        found_h1 = False
        for line in lines:
            stripped = line.strip()
            if stripped.startswith('# '):
                found_h1 = True
                continue
            if found_h1 and stripped.startswith('## '):
                return stripped[3:].strip()
        return None

    @staticmethod
    def normalize_plain_text(markdown: str) -> str:
        """Flatten Markdown to prose. Fenced code becomes an indented block."""

        def indent_block(match):
            body = match.group(1).strip('\n')
            lines = [f"    {line.rstrip()}" if line.strip() else '' for line in body.split('\n')]
            return '\n' + '\n'.join(lines) + '\n'

        text = FENCED_BLOCK.sub(indent_block, markdown)
        text = re.sub(r'`([^`\n]+)`', r'\1', text)
        text = re.sub(r'^\s{0,3}[-*+]\s+', '- ', text, flags=re.M)
        text = re.sub(r'^\s{0,3}\d+\.\s+', '- ', text, flags=re.M)
        text = re.sub(r'^\s{0,3}#{1,6}\s*', '', text, flags=re.M)
        text = re.sub(r'\*\*([^*\n]+)\*\*', r'\1', text)
        text = re.sub(r'(?<![\w*])\*([^*\n]+)\*(?![\w*])', r'\1', text)
        text = re.sub(r'__([^_\n]+)__', r'\1', text)
        text = re.sub(r'(?<![\w_])_([^_\n]+)_(?![\w_])', r'\1', text)
        text = re.sub(r'!\[([^\]]*)\]\([^)]*\)', r'\1', text)
        text = re.sub(r'\[([^\]]*)\]\(([^)]*)\)', r'\1 (\2)', text)
        text = re.sub(r'\[([^\]]*)\]\[([^\]]*)\]', r'\1', text)
        return re.sub(r'\n{3,}', '\n\n', text)

    @staticmethod
    def _clean_text(text: str) -> str:
        cleaned = []
        for line in text.split('\n'):
            indent = re.match(r'^[ \t]*', line).group(0).replace('\t', '    ')
            body = re.sub(r'[\t ]+', ' ', line.lstrip(' \t')).rstrip()
            cleaned.append(indent + body if body else '')
        return re.sub(r'\n{3,}', '\n\n', '\n'.join(cleaned)).strip()

    def _degraded(self, html: str, url: Optional[str]) -> ParsedDocument:
        text = re.sub(r'<[^>]+>', ' ', html or '')
        return ParsedDocument(title=UNTITLED, text=self._clean_text(text), metadata={'url': url})


def parse_html(html: str, url: Optional[str] = None, **options) -> ParsedDocument:
    return DocumentParser(**options).parse_html(html, url)


def parse_markdown(markdown: str, url: Optional[str] = None, **options) -> ParsedDocument:
    return DocumentParser(**options).parse_markdown(markdown, url)


def parse_text(text: str, url: Optional[str] = None, **options) -> ParsedDocument:
    return DocumentParser(**options).parse_text(text, url)


def parse_document(data: bytes, filename: str, **options) -> ParsedDocument:
    """Parse an uploaded file based on its extension.

    Binary formats (pdf, docx, epub) are not supported and yield an empty
    document flagged as unsupported.
    """
    parser = DocumentParser(**options)
    extension = filename.lower().rsplit('.', 1)[-1] if '.' in filename else ''
    content = data.decode('utf-8', errors='replace')

    if extension in ('md', 'markdown'):
        return parser.parse_markdown(content)
    if extension in ('html', 'htm'):
        return parser.parse_html(content)
    if extension in ('pdf', 'docx', 'epub'):
        logger.warning(f"Parsing {extension} files is not supported: {filename}")
        return ParsedDocument(title=filename, text='', metadata={'filename': filename, 'unsupported': True})
    return parser.parse_text(content)
