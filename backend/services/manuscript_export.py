"""Plain-text manuscript export."""

from datetime import datetime
from typing import List, Tuple, TypeVar, Union

from models import Book, Chapter, Project, Scene
from storage import StoryStore
from utils.text_cleaner import slugify_filename

RULE = "=" * 50
CHAPTER_BREAK = "-" * 30
SCENE_BREAK = "* * *"

OrderedT = TypeVar("OrderedT", Chapter, Scene)


def reading_order_key(item: Union[Chapter, Scene]) -> Tuple[int, datetime, str]:
    position = item.sort_order if item.sort_order else item.order_index
    return (position or 0, item.created_at, item.id)


def in_reading_order(items: List[OrderedT]) -> List[OrderedT]:
    return sorted(items, key=reading_order_key)


def render_manuscript(book: Book, project: Project, chapters: List[Tuple[Chapter, List[Scene]]]) -> str:
    """Render a book as plain text; output depends only on the stored content."""
    parts: List[str] = [f"{book.title.upper()}\n"]
    if book.subtitle:
        parts.append(f"{book.subtitle}\n")
    parts.append("\n")
    parts.append(f"From: {project.title}\n")
    parts.append("\n")
    parts.append(RULE + "\n\n")

    ordered = sorted(chapters, key=lambda pair: reading_order_key(pair[0]))
    for index, (chapter, scenes) in enumerate(ordered):
        header = f"CHAPTER {index + 1}"
        if chapter.title:
            header += f": {chapter.title}"
        parts.append(header + "\n\n")

        chapter_scenes = in_reading_order(scenes)
        for position, scene in enumerate(chapter_scenes):
            prose = scene.prose
            if not prose:
                continue
            parts.append(prose.strip() + "\n\n")
            if position < len(chapter_scenes) - 1:
                parts.append(SCENE_BREAK + "\n\n")

        if index < len(ordered) - 1:
            parts.append("\n" + CHAPTER_BREAK + "\n\n")

    parts.append("\n" + RULE + "\n")
    parts.append("THE END\n")
    return "".join(parts)


def export_book_text(store: StoryStore, book: Book, project: Project) -> Tuple[str, str]:
    """Return ``(filename, text)`` for a book."""
    chapters = [(chapter, store.list_scenes(chapter.id)) for chapter in store.list_chapters(book.id)]
    text = render_manuscript(book, project, chapters)
    return f"{slugify_filename(book.title)}.txt", text
