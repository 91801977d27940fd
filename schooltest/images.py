import re
from typing import Any, Iterator, List, Mapping, Optional

IMAGE_SCHEME = "db-image://"

_REFERENCE_RE = re.compile(re.escape(IMAGE_SCHEME) + r'([\w-]+)')


def image_reference(image_id: str) -> str:
    """Reference inserted into markdown when an image is uploaded into a test."""
    return f"{IMAGE_SCHEME}{image_id}"


def _stored_data(entry: Any) -> Optional[str]:
    if isinstance(entry, str):
        return entry
    if isinstance(entry, Mapping):
        data = entry.get("data")
    else:
        data = getattr(entry, "data", None)
    return data if isinstance(data, str) and data else None


def resolve_image(reference: str, images: Optional[Mapping[str, Any]] = None) -> str:
    """
    Return the string to use as an <img> source.
    db-image://<id> references are swapped for the stored data URI when the id
    is known; any other reference (or an unknown id) comes back unchanged.
    """
    if not images or not isinstance(reference, str) or not reference.startswith(IMAGE_SCHEME):
        return reference
    image_id = reference[len(IMAGE_SCHEME):]
    try:
        entry = images.get(image_id)
    except (AttributeError, TypeError):
        return reference
    data = _stored_data(entry)
    return data if data is not None else reference


def referenced_images(markdown: str) -> List[str]:
    return _REFERENCE_RE.findall(markdown or "")


def _test_markdown(test) -> Iterator[str]:
    for stage in test.stages:
        yield stage.content
        for question in stage.questions:
            yield question.text
            yield question.explanation
            for option in question.options:
                yield option.text


def unused_images(test) -> List[str]:
    """Image ids stored on the test that no markdown field points at any more"""
    used = set()
    for text in _test_markdown(test):
        used.update(referenced_images(text))
    return [image_id for image_id in test.images if image_id not in used]


def prune_images(test):
    """Copy of the test without the images nothing references"""
    unused = set(unused_images(test))
    if not unused:
        return test
    kept = {image_id: image for image_id, image in test.images.items() if image_id not in unused}
    return test.model_copy(update={"images": kept})
