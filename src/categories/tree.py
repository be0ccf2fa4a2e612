"""
Hierarchical category tree for organizing process templates.

Categories are stored flat with parent pointers and a materialized path
('/root-id/.../self-id'). Descendants are found by path, never by walking
object references, so moving a subtree rewrites path/level for every node
under it in a single write.

Writers for one scope (create, update, move, reorder, delete) are serialized
by a per-scope lock; readers see whole-table snapshots. Template writes hold
the categories they reference shared (see referencing()); delete holds the
category exclusive, so it never runs between a reference check and the
write that depends on it.
"""

import logging
import uuid
from contextlib import ExitStack, contextmanager
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional

from src.templates.errors import (
    CategoryCycleError,
    ConflictError,
    HasChildrenError,
    HasTemplatesError,
    NotFoundError,
    ValidationError,
)
from src.templates.locking import KeyedLock, KeyedSharedLock
from src.templates.schemas import (
    Category,
    CategoryNode,
    CreateCategoryRequest,
    Scope,
    SortOrderItem,
    UpdateCategoryRequest,
    utc_now_iso,
)
from src.templates.storage import JsonTable


logger = logging.getLogger(__name__)


# (scope, category_id) -> number of templates filed directly under the category
TemplateCounter = Callable[[Scope, str], int]


def _sibling_order(category: Category):
    return (category.sort_order, category.name, category.id)


def _no_templates(scope: Scope, category_id: str) -> int:
    return 0


class CategoryTreeStore:
    """
    Category tree storage and operations.

    Usage:
        store = CategoryTreeStore(template_counter=coordinator.count_templates_in_category)
        root = store.create(scope, CreateCategoryRequest(name="HR", code="hr"), "alice")
        tree = store.get_tree(scope)
    """

    def __init__(
        self,
        data_dir: Optional[Path] = None,
        template_counter: Optional[TemplateCounter] = None,
    ):
        self._table: JsonTable[Category] = JsonTable("categories", Category, data_dir)
        self._scope_locks = KeyedLock()
        self._reference_locks = KeyedSharedLock()
        self._template_counter = template_counter or _no_templates

    def set_template_counter(self, template_counter: TemplateCounter) -> None:
        self._template_counter = template_counter

    @contextmanager
    def referencing(self, scope: Scope, *category_ids: Optional[str]) -> Iterator[None]:
        """
        Keep categories from being deleted or reassigned while a template row
        that points at them is checked and written.
        """
        with ExitStack() as stack:
            for category_id in sorted({c for c in category_ids if c}):
                stack.enter_context(self._reference_locks.shared((*scope.key(), category_id)))
            yield

    @contextmanager
    def exclusive(self, scope: Scope, *category_ids: str) -> Iterator[None]:
        """Wait out every referencing() holder of the categories and keep new ones out."""
        with ExitStack() as stack:
            for category_id in sorted(set(category_ids)):
                stack.enter_context(self._reference_locks.exclusive((*scope.key(), category_id)))
            yield

    # ============ Reads ============

    def get(self, scope: Scope, category_id: str) -> Optional[Category]:
        category = self._table.get(category_id)
        if category is None or not category.in_scope(scope):
            return None
        return category

    def require(self, scope: Scope, category_id: str) -> Category:
        category = self.get(scope, category_id)
        if category is None:
            raise NotFoundError("Category", category_id)
        return category

    def list_in_scope(self, scope: Scope) -> List[Category]:
        return self._table.select(lambda c: c.in_scope(scope))

    def list_children(self, scope: Scope, parent_id: Optional[str]) -> List[Category]:
        """Direct children of ``parent_id`` (roots when None), in display order."""
        children = self._table.select(lambda c: c.in_scope(scope) and c.parent_id == parent_id)
        return sorted(children, key=_sibling_order)

    def path_ids(self, scope: Scope, category_id: str) -> List[str]:
        return self.require(scope, category_id).path_ids()

    def path_names(self, scope: Scope, category_id: str) -> str:
        by_id = {c.id: c for c in self.list_in_scope(scope)}
        return self._path_names(by_id, self.require(scope, category_id))

    @staticmethod
    def _path_names(by_id: Dict[str, Category], category: Category) -> str:
        return "/".join(by_id[i].name for i in category.path_ids() if i in by_id)

    def _children_index(self, scope: Scope) -> Dict[Optional[str], List[Category]]:
        index: Dict[Optional[str], List[Category]] = {}
        for category in self.list_in_scope(scope):
            index.setdefault(category.parent_id, []).append(category)
        for siblings in index.values():
            siblings.sort(key=_sibling_order)
        return index

    @staticmethod
    def _walk(index: Dict[Optional[str], List[Category]], parent_id: Optional[str]) -> Iterator[Category]:
        stack = list(reversed(index.get(parent_id, [])))
        while stack:
            category = stack.pop()
            yield category
            stack.extend(reversed(index.get(category.id, [])))

    def iter_descendants(self, scope: Scope, category_id: str) -> Iterator[Category]:
        """
        Lazily yield every descendant of a category, depth-first.

        The table is read when iteration starts, so each call walks a
        consistent snapshot and can be restarted by calling again.
        """
        self.require(scope, category_id)
        yield from self._walk(self._children_index(scope), category_id)

    def iter_tree(self, scope: Scope) -> Iterator[Category]:
        """Lazily yield every category in the scope, depth-first from the roots."""
        yield from self._walk(self._children_index(scope), None)

    def get_tree(self, scope: Scope) -> List[CategoryNode]:
        """
        Build the nested tree with recursive template counts.

        Returns:
            Root nodes in display order
        """
        index = self._children_index(scope)
        by_id = {c.id: c for siblings in index.values() for c in siblings}

        def build(category: Category) -> CategoryNode:
            children = [build(child) for child in index.get(category.id, [])]
            own = self._template_counter(scope, category.id)
            return CategoryNode(
                category=category,
                children=children,
                has_children=bool(children),
                template_count=own + sum(child.template_count for child in children),
                path_names=self._path_names(by_id, category),
            )

        return [build(root) for root in index.get(None, [])]

    def search(self, scope: Scope, keyword: str) -> List[CategoryNode]:
        """
        Case-insensitive name/code search.

        Returns:
            Matching categories as childless nodes carrying path names and
            recursive template counts, in tree order
        """
        needle = (keyword or "").strip().lower()
        index = self._children_index(scope)
        by_id = {c.id: c for siblings in index.values() for c in siblings}

        results = []
        for category in self._walk(index, None):
            if needle and needle not in category.name.lower() and needle not in category.code.lower():
                continue
            subtree = [category.id] + [d.id for d in self._walk(index, category.id)]
            results.append(CategoryNode(
                category=category,
                has_children=bool(index.get(category.id)),
                template_count=sum(self._template_counter(scope, i) for i in subtree),
                path_names=self._path_names(by_id, category),
            ))
        return results

    # ============ Writes ============

    def _check_code_free(
        self,
        scope: Scope,
        parent_id: Optional[str],
        code: str,
        exclude_id: Optional[str] = None,
    ) -> None:
        clash = [
            c for c in self.list_children(scope, parent_id)
            if c.code == code and c.id != exclude_id
        ]
        if clash:
            raise ConflictError(
                f"Category code '{code}' already exists under this parent",
                {"code": code, "parent_id": parent_id, "existing_id": clash[0].id},
            )

    @staticmethod
    def _check_name_and_code(name: str, code: str) -> None:
        errors = []
        if not name or not name.strip():
            errors.append("name must not be blank")
        if not code or not code.strip():
            errors.append("code must not be blank")
        if errors:
            raise ValidationError("Invalid category", errors)

    def create(self, scope: Scope, request: CreateCategoryRequest, user_id: str = "system") -> Category:
        """
        Create a category under ``request.parent_id`` (root when None).

        Raises:
            ValidationError: If name or code is blank
            NotFoundError: If the parent does not exist in scope
            ConflictError: If the code is already used by a sibling
        """
        self._check_name_and_code(request.name, request.code)
        with self._scope_locks.hold(scope.key()):
            category_id = str(uuid.uuid4())
            if request.parent_id is not None:
                parent = self.require(scope, request.parent_id)
                path, level = f"{parent.path}/{category_id}", parent.level + 1
            else:
                path, level = f"/{category_id}", 0

            self._check_code_free(scope, request.parent_id, request.code.strip())
            category = Category(
                id=category_id,
                name=request.name.strip(),
                code=request.code.strip(),
                parent_id=request.parent_id,
                path=path,
                level=level,
                sort_order=request.sort_order,
                description=request.description,
                icon=request.icon,
                created_by=user_id,
                updated_by=user_id,
                **scope.model_dump(),
            )
            self._table.put(category)

        logger.info(f"Created category {category.id} ({category.code}) at {category.path}")
        return category

    def update(
        self,
        scope: Scope,
        category_id: str,
        request: UpdateCategoryRequest,
        user_id: str = "system",
    ) -> Category:
        """Update name, code, description, icon and (optionally) sort order."""
        self._check_name_and_code(request.name, request.code)
        with self._scope_locks.hold(scope.key()):
            category = self.require(scope, category_id)
            self._check_code_free(scope, category.parent_id, request.code.strip(), exclude_id=category_id)

            category.name = request.name.strip()
            category.code = request.code.strip()
            category.description = request.description
            category.icon = request.icon
            if request.sort_order is not None:
                category.sort_order = request.sort_order
            category.updated_time = utc_now_iso()
            category.updated_by = user_id
            self._table.put(category)

        logger.info(f"Updated category {category_id}")
        return category

    def move(
        self,
        scope: Scope,
        category_id: str,
        new_parent_id: Optional[str],
        user_id: str = "system",
    ) -> Category:
        """
        Re-parent a category and rewrite path/level for its whole subtree.

        Raises:
            NotFoundError: If the category or the new parent does not exist
            CategoryCycleError: If new_parent_id is the category or one of its descendants
            ConflictError: If the code collides with a child of the new parent
        """
        with self._scope_locks.hold(scope.key()):
            category = self.require(scope, category_id)
            old_path = category.path

            if new_parent_id is not None:
                parent = self.require(scope, new_parent_id)
                if category_id in parent.path_ids():
                    raise CategoryCycleError(
                        f"Cannot move category {category_id} under itself or its descendant {new_parent_id}",
                        {"id": category_id, "new_parent_id": new_parent_id},
                    )
                new_path, new_level = f"{parent.path}/{category_id}", parent.level + 1
            else:
                new_path, new_level = f"/{category_id}", 0

            if new_parent_id != category.parent_id:
                self._check_code_free(scope, new_parent_id, category.code, exclude_id=category_id)

            now = utc_now_iso()
            descendants = list(self._walk(self._children_index(scope), category_id))
            category.parent_id = new_parent_id
            category.path = new_path
            category.level = new_level
            category.updated_time = now
            category.updated_by = user_id
            for node in descendants:
                node.path = new_path + node.path[len(old_path):]
                node.level = len(node.path_ids()) - 1
                node.updated_time = now
            self._table.put_many([category] + descendants)

        logger.info(f"Moved category {category_id}: {old_path} -> {new_path} ({len(descendants)} descendants)")
        return category

    def delete(self, scope: Scope, category_id: str) -> None:
        """
        Delete a leaf category with no templates. Never cascades.

        Raises:
            NotFoundError: If the category does not exist
            HasChildrenError: If child categories exist
            HasTemplatesError: If drafts or published templates reference it
        """
        with self._scope_locks.hold(scope.key()), self.exclusive(scope, category_id):
            self.require(scope, category_id)
            child_count = len(self.list_children(scope, category_id))
            if child_count:
                raise HasChildrenError(category_id, child_count)
            template_count = self._template_counter(scope, category_id)
            if template_count:
                raise HasTemplatesError(category_id, template_count)
            self._table.delete(category_id)

        logger.info(f"Deleted category {category_id}")

    def update_sort_order(
        self,
        scope: Scope,
        category_id: str,
        sort_order: int,
        user_id: str = "system",
    ) -> Category:
        return self.batch_update_sort_order(
            scope, [SortOrderItem(id=category_id, sort_order=sort_order)], user_id
        )[0]

    def batch_update_sort_order(
        self,
        scope: Scope,
        items: List[SortOrderItem],
        user_id: str = "system",
    ) -> List[Category]:
        """
        Apply several sort orders at once.

        All ids are resolved before anything is written; one unknown id fails
        the whole batch and nothing is applied.

        Raises:
            NotFoundError: If any id does not exist in scope
        """
        with self._scope_locks.hold(scope.key()):
            categories = [self.require(scope, item.id) for item in items]
            now = utc_now_iso()
            for category, item in zip(categories, items):
                category.sort_order = item.sort_order
                category.updated_time = now
                category.updated_by = user_id
            if categories:
                self._table.put_many(categories)

        logger.info(f"Updated sort order for {len(categories)} categories")
        return categories
