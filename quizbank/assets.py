"""
Asset Lifecycle Manager
=======================
Keeps question/option images in the object store in step with quiz
documents.

Rules:
    - Inline content (a ``data:...;base64,`` URI) is uploaded before the
      quiz is persisted. One failed upload aborts the whole write, and
      images already uploaded by that write are removed again.
    - After an update, images the previous document referenced but the new
      one no longer keeps are orphans and get deleted.
    - Deletion is best-effort: failures are logged, never raised.

All functions operate on canonical quiz documents (camelCase dicts as
produced by ``Quiz.to_document()``).
"""

from __future__ import annotations

import copy
import logging
import re
from typing import Iterator

from .errors import AssetUploadError
from .storage import DELETE_BATCH_SIZE, AssetStoreError

logger = logging.getLogger(__name__)

INLINE_CONTENT_PATTERN = re.compile(r"^data:[^,]*;base64,", re.IGNORECASE)

_TAG_PATTERN = re.compile(r"<[^>]+>")


def is_inline_content(ref) -> bool:
    """True for embedded image bytes, False for hosted references."""
    return isinstance(ref, str) and bool(INLINE_CONTENT_PATTERN.match(ref))


def iter_image_owners(quiz: dict) -> Iterator[tuple[dict, dict]]:
    """
    Yield ``(question, owner)`` for every entity that can carry an image:
    each question itself, then each of its options.
    """
    for section in quiz.get("sections", []):
        for question in section.get("questions", []):
            yield question, question
            for option in question.get("options", []):
                yield question, option


def collect_storage_ids(quiz: dict) -> set[str]:
    """Every storage id reachable from a quiz document."""
    return {
        owner["imagePublicId"]
        for _, owner in iter_image_owners(quiz)
        if owner.get("imagePublicId")
    }


def carry_forward_storage_ids(old: dict, new: dict) -> dict:
    """
    Give every hosted image in ``new`` the storage id ``old`` holds for the
    same URL, and strip any other ``imagePublicId`` the client sent.

    Editors often echo back only ``imageUrl`` for an unchanged image, and a
    duplicated quiz echoes another quiz's id. Storage ids therefore come
    only from the previous stored document or from this write's uploads;
    a quiz never owns an image it did not upload itself.
    """
    known = {
        owner["imageUrl"]: owner["imagePublicId"]
        for _, owner in iter_image_owners(old)
        if owner.get("imageUrl") and owner.get("imagePublicId")
    }
    result = copy.deepcopy(new)
    for _, owner in iter_image_owners(result):
        url = owner.get("imageUrl")
        claimed = owner.pop("imagePublicId", None)
        if not url or is_inline_content(url):
            continue
        if url in known:
            owner["imagePublicId"] = known[url]
        elif claimed:
            logger.warning(f"Dropped unowned storage id {claimed} for {url}")
    return result


def diff_for_cleanup(old: dict, new: dict) -> set[str]:
    """
    Storage ids referenced by ``old`` that ``new`` no longer keeps.

    Only hosted (non-inline) fields of ``new`` count as kept; a field that
    now holds fresh inline content replaces whatever was there before.
    """
    kept: set[str] = set()
    kept_urls: set[str] = set()
    for _, owner in iter_image_owners(new):
        url = owner.get("imageUrl")
        if not url or is_inline_content(url):
            continue
        kept_urls.add(url)
        if owner.get("imagePublicId"):
            kept.add(owner["imagePublicId"])

    for _, owner in iter_image_owners(old):
        if owner.get("imagePublicId") and owner.get("imageUrl") in kept_urls:
            kept.add(owner["imagePublicId"])

    return collect_storage_ids(old) - kept


def question_label(question: dict, length: int = 50) -> str:
    """Leading text of a question, tags stripped, for operator messages."""
    text = " ".join(_TAG_PATTERN.sub(" ", question.get("text") or "").split())
    if not text:
        return f"question {question.get('id', '?')}"
    return text if len(text) <= length else text[:length].rstrip() + "..."


class AssetLifecycleManager:
    """
    Uploads inline images and deletes orphaned ones through an asset store
    (``CloudinaryAssetStore`` or ``LocalAssetStore``).

    Stateless apart from the store handle, so one instance serves all
    concurrent requests.
    """

    def __init__(self, store):
        self.store = store

    def resolve_for_persist(self, quiz: dict, folder: str) -> tuple[dict, list[str]]:
        """
        Upload every inline image and replace it with its hosted reference.

        Returns:
            (resolved copy of the quiz, storage ids uploaded by this call).
            ``len(uploaded)`` is the uploaded count.

        Raises:
            AssetUploadError: on the first failed upload. Nothing of this
                call remains in the store afterwards.
        """
        resolved = copy.deepcopy(quiz)
        uploaded: list[str] = []

        for question, owner in iter_image_owners(resolved):
            ref = owner.get("imageUrl")
            if not is_inline_content(ref):
                continue
            try:
                asset = self.store.upload(ref, folder)
            except AssetStoreError as e:
                label = question_label(question)
                logger.error(
                    f"Image upload failed for \"{label}\" after "
                    f"{len(uploaded)} successful upload(s): {e}"
                )
                self.delete_assets(uploaded)
                raise AssetUploadError(
                    f"Failed to upload image for question \"{label}\"."
                ) from e
            owner["imageUrl"] = asset.url
            owner["imagePublicId"] = asset.public_id
            uploaded.append(asset.public_id)

        if uploaded:
            logger.info(f"Uploaded {len(uploaded)} image(s) to {folder}")
        return resolved, uploaded

    def delete_assets(self, public_ids) -> int:
        """
        Best-effort batched delete. Returns the number of ids that could not
        be deleted; failures are logged and left for a later sweep.
        """
        ids = sorted(set(public_ids))
        if not ids:
            return 0

        failed: list[str] = []
        for start in range(0, len(ids), DELETE_BATCH_SIZE):
            batch = ids[start:start + DELETE_BATCH_SIZE]
            try:
                failed.extend(self.store.delete_many(batch))
            except Exception:
                logger.error(
                    f"Asset cleanup batch of {len(batch)} failed",
                    exc_info=True,
                )
                failed.extend(batch)

        if failed:
            logger.warning(
                f"Could not delete {len(failed)} of {len(ids)} image(s): "
                f"{', '.join(failed[:10])}"
            )
        else:
            logger.info(f"Deleted {len(ids)} orphaned image(s)")
        return len(failed)
