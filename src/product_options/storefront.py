from __future__ import annotations

import logging
from dataclasses import dataclass, field

from markupsafe import Markup

from .cart import CartSubmissionGuard, SubmissionResult, SubmitEvent
from .form_state import ControlEvent, LiveForm
from .renderer import render_form, render_load_error, render_validation_error
from .rules_engine import RuleEngine
from .snapshot import StaticSnapshotLoader, TemplateLoadError, TemplateSnapshot, TemplateSnapshotLoader
from .value_store import ValueStore
from .visibility import PassReport, VisibilityEngine

PRODUCT_ID_ATTRIBUTE = "data-product-id"
API_URL_ATTRIBUTE = "data-api-url"

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class HostContainer:
    """Element on the host product page that the options are painted into."""

    attributes: dict[str, str]
    content: Markup = field(default_factory=Markup)
    message: Markup = field(default_factory=Markup)

    @property
    def product_id(self) -> str:
        return self.attributes.get(PRODUCT_ID_ATTRIBUTE, "")

    @property
    def api_url(self) -> str:
        return self.attributes.get(API_URL_ATTRIBUTE, "")


class StorefrontSession:
    """One product page view: load once, then react to shopper events."""

    def __init__(
        self,
        container: HostContainer,
        loader: TemplateSnapshotLoader | StaticSnapshotLoader | None = None,
    ) -> None:
        self.container = container
        # configuration is read once; later attribute changes are ignored
        self.product_id = container.product_id
        self.api_url = container.api_url
        self._owns_loader = loader is None
        self.loader = loader or TemplateSnapshotLoader(self.api_url)
        self.snapshot: TemplateSnapshot | None = None
        self.form = LiveForm()
        self.values: ValueStore | None = None
        self.visibility: VisibilityEngine | None = None
        self.guard: CartSubmissionGuard | None = None
        self.initialized = False
        self.load_failed = False

    @property
    def active(self) -> bool:
        return self.snapshot is not None

    def initialize(self) -> None:
        if self.initialized:
            return
        self.initialized = True

        try:
            snapshot = self.loader.load(self.product_id)
        except TemplateLoadError as error:
            self.load_failed = True
            logger.error("template_load_failed", extra={"product_id": self.product_id, "error": str(error)})
            self.container.content = render_load_error()
            return
        finally:
            # the snapshot is fetched once per page view
            if self._owns_loader:
                self.loader.close()

        if snapshot is None:
            self.container.content = Markup("")
            return

        self.snapshot = snapshot
        self.values = ValueStore(snapshot)
        self.form = LiveForm.from_snapshot(snapshot)
        self.visibility = VisibilityEngine(snapshot, RuleEngine.from_snapshot(snapshot))
        self.guard = CartSubmissionGuard(snapshot)
        self.evaluate()

    def evaluate(self) -> PassReport | None:
        if self.snapshot is None or self.values is None or self.visibility is None:
            return None
        report = self.visibility.apply(self.form, self.values)
        self.render()
        return report

    def render(self) -> Markup:
        if self.snapshot is None:
            return self.container.content
        self.container.content = render_form(self.snapshot, self.form, self.product_id)
        return self.container.content

    def dispatch(self, event: ControlEvent) -> PassReport | None:
        if self.snapshot is None or self.values is None:
            return None
        container = self.form.container(event.field_id)
        if container is None or not self.values.accepts(event, container):
            return None
        if self.form.apply_event(event) is None:
            return None
        if self.values.update_from_form(event, self.form) is None:
            return None
        return self.evaluate()

    def visible_field_ids(self) -> list[str]:
        return [container.field_id for container in self.form.visible_containers()]

    def submit(self, event: SubmitEvent) -> SubmissionResult:
        if self.snapshot is None or self.values is None or self.guard is None or not event.form.is_add_to_cart:
            return SubmissionResult(allowed=True)
        result = self.guard.handle_submit(event, self.form, self.values)
        self.container.message = (
            render_validation_error(result.message or "") if not result.allowed else Markup("")
        )
        return result
