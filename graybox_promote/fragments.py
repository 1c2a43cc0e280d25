"""
Fragment discovery and categorization.

Pages embed fragments by linking to '<https://...aem.page/.../fragments/...>'.
Discovery walks those links with an explicit worklist and a visited map keyed
by normalized URL, so cyclic fragment graphs terminate and every fragment is
fetched at most once per run. By default only fragments found directly on a
page are expanded (max_depth=1); their nested fragments are fetched and
inspected but not expanded further.
"""

import asyncio
import re
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional
from urllib.parse import urlparse, urlunparse

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

FRAGMENT_LINK = re.compile(r'https://[^\s<>()\[\]"\']*aem\.page[^\s<>()\[\]"\']*/fragments/[^\s<>()\[\]"\']*')

STATUS_AVAILABLE = (200, 'Available')
STATUS_SERVER_ERROR = (500, 'Server Error')

FetchContent = Callable[[str], Awaitable[Optional[str]]]


class FragmentRef(BaseModel):
    fragmentPath: str
    status: int = 0
    availability: str = "Unknown"
    depth: int = 0
    # Every fragment URL found in this fragment's content (visited or not)
    references: List[str] = Field(default_factory=list)
    # Fragments first discovered through this one
    nestedFragments: List["FragmentRef"] = Field(default_factory=list)
    content: Optional[str] = Field(default=None, exclude=True)

    @property
    def available(self) -> bool:
        return self.status == STATUS_AVAILABLE[0]

    @property
    def has_nested(self) -> bool:
        return bool(self.references)


FragmentRef.model_rebuild()


def normalize_fragment_url(url: str) -> str:
    url = url.strip().strip('<>')
    parsed = urlparse(url)
    path = parsed.path
    if path.endswith('.md'):
        path = path[:-len('.md')]
    path = path.rstrip('/')
    return urlunparse((parsed.scheme.lower(), parsed.netloc.lower(), path, '', '', ''))


def extract_fragment_urls(content: Optional[str]) -> List[str]:
    """Unique normalized fragment URLs in order of first appearance."""
    found: List[str] = []
    for match in FRAGMENT_LINK.findall(content or ""):
        url = normalize_fragment_url(match)
        if url not in found:
            found.append(url)
    return found


def fragment_path(url: str) -> str:
    return urlparse(url).path


class FragmentDiscovery:
    """One instance per discovery run; the visited map spans every page."""

    def __init__(self, fetch_content: FetchContent, max_depth: int = 1):
        self.fetch_content = fetch_content
        # max_depth < 0 expands without a depth bound (the visited map still terminates it)
        self.max_depth = max_depth
        self.visited: Dict[str, FragmentRef] = {}

    async def discover_page(self, page_url: str) -> List[FragmentRef]:
        content = await self._fetch(page_url)
        if content is None:
            logger.warning(f"Could not fetch page {page_url} for fragment discovery")
            return []
        return await self.discover(content)

    async def discover(self, page_content: str) -> List[FragmentRef]:
        """Fragments referenced by a page, with nested fragments attached."""
        roots: List[FragmentRef] = []
        pending = deque()

        for url in extract_fragment_urls(page_content):
            ref = self.visited.get(url)
            if ref is None:
                ref = self._register(url, depth=0)
                pending.append(ref)
            roots.append(ref)

        while pending:
            # Fetch one wave concurrently, then expand in order
            wave = list(pending)
            pending.clear()
            contents = await asyncio.gather(*(self._fetch(f"{ref.fragmentPath}.md") for ref in wave))

            for ref, content in zip(wave, contents):
                if content is None:
                    ref.status, ref.availability = STATUS_SERVER_ERROR
                    continue
                ref.status, ref.availability = STATUS_AVAILABLE
                ref.content = content
                ref.references = extract_fragment_urls(content)

                if 0 <= self.max_depth <= ref.depth:
                    continue
                for nested_url in ref.references:
                    if nested_url in self.visited:
                        continue
                    child = self._register(nested_url, depth=ref.depth + 1)
                    ref.nestedFragments.append(child)
                    pending.append(child)

        logger.debug(f"Discovered {len(roots)} fragments on page ({len(self.visited)} visited in run)")
        return roots

    def _register(self, url: str, depth: int) -> FragmentRef:
        ref = FragmentRef(fragmentPath=url, depth=depth)
        self.visited[url] = ref
        return ref

    async def _fetch(self, url: str) -> Optional[str]:
        try:
            return await self.fetch_content(url)
        except Exception as e:
            logger.warning(f"Fragment fetch failed for {url}: {e}")
            return None


def iter_fragments(refs: Iterable[FragmentRef]) -> List[FragmentRef]:
    """Flatten refs and their nested fragments, each fragment once."""
    seen = set()
    ordered: List[FragmentRef] = []
    stack = list(reversed(list(refs)))
    while stack:
        ref = stack.pop()
        if ref.fragmentPath in seen:
            continue
        seen.add(ref.fragmentPath)
        ordered.append(ref)
        stack.extend(reversed(ref.nestedFragments))
    return ordered


def categorize_fragment(ref: FragmentRef) -> Dict[str, Any]:
    prefix = "nested_fragment" if ref.depth > 0 else "fragment"
    if ref.has_nested:
        kind, priority = f"{prefix}_with_nested", "high"
    else:
        kind, priority = f"{prefix}_no_nested", "medium"
    return {
        'fragmentPath': ref.fragmentPath,
        'type': kind,
        'priority': priority,
        'requiresRecursiveProcessing': ref.has_nested,
        'status': ref.status,
        'availability': ref.availability,
        'nestedFragments': list(ref.references),
    }


def categorize_fragments(refs: Iterable[FragmentRef]) -> Dict[str, List[Dict[str, Any]]]:
    categories: Dict[str, List[Dict[str, Any]]] = {'withNested': [], 'withoutNested': []}
    for ref in iter_fragments(refs):
        bucket = 'withNested' if ref.has_nested else 'withoutNested'
        categories[bucket].append(categorize_fragment(ref))
    return categories


def categorize_page(source_path: str, fragments: List[FragmentRef]) -> Dict[str, Any]:
    if fragments:
        return {
            'sourcePath': source_path,
            'category': 'page_with_fragments',
            'priority': 'high',
            'fragments': [f.fragmentPath for f in fragments],
        }
    return {'sourcePath': source_path, 'category': 'page_no_fragments', 'priority': 'low', 'fragments': []}


def consolidated_fragment_data(
    pages: List[Dict[str, Any]],
    categories: Dict[str, List[Dict[str, Any]]],
    batches: Dict[str, List[str]],
    processing_count: int,
    non_processing_count: int,
) -> Dict[str, Any]:
    with_fragments = [p for p in pages if p['category'] == 'page_with_fragments']
    without_fragments = [p for p in pages if p['category'] != 'page_with_fragments']
    return {
        'summary': {
            'totalPages': len(pages),
            'pagesWithFragments': len(with_fragments),
            'pagesWithoutFragments': len(without_fragments),
            'totalFragments': len(categories['withNested']) + len(categories['withoutNested']),
            'fragmentsWithNested': len(categories['withNested']),
            'fragmentsWithoutNested': len(categories['withoutNested']),
            'processingItems': processing_count,
            'nonProcessingItems': non_processing_count,
            'processingBatches': len(batches.get('processing', [])),
            'nonProcessingBatches': len(batches.get('nonProcessing', [])),
        },
        'pages': {'withFragments': with_fragments, 'withoutFragments': without_fragments},
        'fragments': categories,
        'batches': batches,
    }
