"""Cascading province -> regency -> district selection.

Two layers:

- `reduce_selection(state, action)` is the pure invalidation table. Setting a
  level clears every level below it; a sentinel ("all", "" or None) clears
  the level itself too. `ApplyMatch` swaps in all three levels at once.
- `CascadingSelectionController` owns one draft's selection plus the option
  lists shown in each dropdown. It checks parentage against the fetched
  options (or the strict code format while options are still loading),
  refetches child options after every change, and drops late option
  responses for a parent that is no longer selected.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Mapping, Union

from .adapters import ReferenceStore
from .codes import (
    DISTRICT,
    PROVINCE,
    REGENCY,
    canonical_code,
    is_structural_child,
    is_valid_province_code,
)
from .errors import InvalidSelectionPath, ReferenceDataUnavailable
from .models import SelectionState
from .reference import AdministrativeNode

logger = logging.getLogger(__name__)

ALL_SENTINELS = ("all", "", None)

# Shareable URL query parameter names, per level.
QUERY_PARAMS = {
    PROVINCE: "provinsi",
    REGENCY: "kabupaten_kota",
    DISTRICT: "kecamatan",
}


@dataclass(frozen=True)
class SetProvince:
    code: str | None


@dataclass(frozen=True)
class SetRegency:
    code: str | None


@dataclass(frozen=True)
class SetDistrict:
    code: str | None


@dataclass(frozen=True)
class ApplyMatch:
    selection: SelectionState


@dataclass(frozen=True)
class Clear:
    pass


SelectionAction = Union[SetProvince, SetRegency, SetDistrict, ApplyMatch, Clear]


def is_sentinel(code: str | None) -> bool:
    """True for values that mean "no choice at this level"."""
    if code is None:
        return True
    return code.strip().lower() in ALL_SENTINELS


def reduce_selection(state: SelectionState, action: SelectionAction) -> SelectionState:
    """Apply one action to a selection.

    Raises:
        InvalidSelectionPath: a child level is set while its parent is empty.
    """
    if isinstance(action, Clear):
        return SelectionState()

    if isinstance(action, ApplyMatch):
        return action.selection

    if isinstance(action, SetProvince):
        if is_sentinel(action.code):
            return SelectionState()
        return SelectionState(province_code=action.code.strip())

    if isinstance(action, SetRegency):
        if is_sentinel(action.code):
            return SelectionState(province_code=state.province_code)
        if not state.province_code:
            raise InvalidSelectionPath("Cannot select a regency before a province")
        return SelectionState(
            province_code=state.province_code, regency_code=action.code.strip()
        )

    if isinstance(action, SetDistrict):
        if is_sentinel(action.code):
            return SelectionState(
                province_code=state.province_code, regency_code=state.regency_code
            )
        if not state.regency_code:
            raise InvalidSelectionPath("Cannot select a district before a regency")
        return SelectionState(
            province_code=state.province_code,
            regency_code=state.regency_code,
            district_code=action.code.strip(),
        )

    raise TypeError(f"Unknown selection action: {action!r}")


SelectionListener = Callable[[SelectionState], None]


class CascadingSelectionController:
    """Selection state and dropdown options for one report draft."""

    def __init__(self, store: ReferenceStore):
        self.store = store
        self._state = SelectionState()
        self._listeners: list[SelectionListener] = []

        self.provinces: list[AdministrativeNode] = []
        self.regencies: list[AdministrativeNode] = []
        self.districts: list[AdministrativeNode] = []
        # Last fetch failure per level; cleared when that level loads again.
        self._options_errors: dict[str, str | None] = {
            PROVINCE: None,
            REGENCY: None,
            DISTRICT: None,
        }

        self._provinces_loaded = False
        # Parent code the current regency/district options belong to.
        self._options_parent: dict[str, str | None] = {REGENCY: None, DISTRICT: None}
        self._fetch_generation = {PROVINCE: 0, REGENCY: 0, DISTRICT: 0}

    @property
    def state(self) -> SelectionState:
        return self._state

    @property
    def options_error(self) -> str | None:
        """The failure of the highest level whose options could not load."""
        for level in (PROVINCE, REGENCY, DISTRICT):
            if self._options_errors[level]:
                return self._options_errors[level]
        return None

    def subscribe(self, listener: SelectionListener) -> Callable[[], None]:
        """Register `listener`; it is called once per committed change."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def load_provinces(self) -> list[AdministrativeNode]:
        self._fetch_generation[PROVINCE] += 1
        generation = self._fetch_generation[PROVINCE]
        try:
            nodes = list(await self.store.list_provinces())
        except ReferenceDataUnavailable as e:
            logger.warning("Province options unavailable: %s", e)
            self._options_errors[PROVINCE] = str(e)
            return self.provinces

        if generation == self._fetch_generation[PROVINCE]:
            self.provinces = nodes
            self._provinces_loaded = True
            self._options_errors[PROVINCE] = None
        return self.provinces

    async def set_province(self, code: str | None) -> SelectionState:
        if not is_sentinel(code):
            self._check_province(code.strip())
        return await self._dispatch(SetProvince(code))

    async def set_regency(self, code: str | None) -> SelectionState:
        if not is_sentinel(code):
            if not self._state.province_code:
                raise InvalidSelectionPath("Cannot select a regency before a province")
            self._check_child(REGENCY, self._state.province_code, code.strip())
        return await self._dispatch(SetRegency(code))

    async def set_district(self, code: str | None) -> SelectionState:
        if not is_sentinel(code):
            if not self._state.regency_code:
                raise InvalidSelectionPath("Cannot select a district before a regency")
            self._check_child(DISTRICT, self._state.regency_code, code.strip())
        return await self._dispatch(SetDistrict(code))

    async def apply_match(self, selection: SelectionState) -> SelectionState:
        """Replace all three levels at once (one notification)."""
        self._check_path(selection)
        return await self._dispatch(ApplyMatch(selection))

    async def clear(self) -> SelectionState:
        return await self._dispatch(Clear())

    def to_query_params(self) -> dict[str, str]:
        """Query parameters for a shareable URL; empty levels are omitted."""
        out: dict[str, str] = {}
        for level, code in (
            (PROVINCE, self._state.province_code),
            (REGENCY, self._state.regency_code),
            (DISTRICT, self._state.district_code),
        ):
            if code:
                out[QUERY_PARAMS[level]] = code
        return out

    async def restore_from_query(self, params: Mapping[str, str]) -> bool:
        """Apply a selection taken from URL query parameters.

        "all" (or a missing level) ends the path; deeper levels are ignored.
        An invalid path leaves the current selection untouched.

        Returns:
            True if the selection was applied.
        """
        codes: list[str] = []
        for level in (PROVINCE, REGENCY, DISTRICT):
            value = params.get(QUERY_PARAMS[level])
            if is_sentinel(value):
                break
            codes.append(canonical_code(value))

        selection_codes = codes + [None] * (3 - len(codes))
        try:
            selection = SelectionState(*selection_codes)
            self._check_path(selection)
        except InvalidSelectionPath as e:
            logger.warning("Ignoring invalid selection in query %s: %s", dict(params), e)
            return False

        await self._dispatch(ApplyMatch(selection))
        return True

    async def _dispatch(self, action: SelectionAction) -> SelectionState:
        previous = self._state
        self._state = reduce_selection(previous, action)
        if self._state != previous:
            logger.debug("Selection %s -> %s", previous.to_dict(), self._state.to_dict())
            for listener in list(self._listeners):
                listener(self._state)
        await self._refresh_options()
        return self._state

    async def _refresh_options(self) -> None:
        state = self._state
        if self._options_parent[REGENCY] != state.province_code or not state.province_code:
            await self._fetch_children(REGENCY, state.province_code)
        if self._options_parent[DISTRICT] != state.regency_code or not state.regency_code:
            await self._fetch_children(DISTRICT, state.regency_code)

    async def _fetch_children(self, level: str, parent_code: str | None) -> None:
        self._fetch_generation[level] += 1
        generation = self._fetch_generation[level]

        if not parent_code:
            self._set_options(level, None, [])
            self._options_errors[level] = None
            return

        fetch = self.store.list_regencies if level == REGENCY else self.store.list_districts
        try:
            nodes = list(await fetch(parent_code))
        except ReferenceDataUnavailable as e:
            if generation == self._fetch_generation[level]:
                logger.warning("%s options for %s unavailable: %s", level, parent_code, e)
                # Never leave the previous parent's children on display.
                self._set_options(level, None, [])
                self._options_errors[level] = str(e)
            return

        if generation != self._fetch_generation[level]:
            logger.debug(
                "Dropping stale %s options for %s (generation %d, current %d)",
                level,
                parent_code,
                generation,
                self._fetch_generation[level],
            )
            return

        self._set_options(level, parent_code, nodes)
        self._options_errors[level] = None

    def _set_options(
        self, level: str, parent_code: str | None, nodes: list[AdministrativeNode]
    ) -> None:
        self._options_parent[level] = parent_code
        if level == REGENCY:
            self.regencies = nodes
        else:
            self.districts = nodes

    def _check_province(self, code: str) -> None:
        if self._provinces_loaded:
            if code not in {n.code for n in self.provinces}:
                raise InvalidSelectionPath(f"Unknown province code {code!r}")
        elif not is_valid_province_code(code):
            raise InvalidSelectionPath(f"Invalid province code {code!r}")

    def _check_child(self, level: str, parent_code: str, code: str) -> None:
        options = self.regencies if level == REGENCY else self.districts
        if self._options_parent[level] == parent_code:
            if code not in {n.code for n in options}:
                raise InvalidSelectionPath(
                    f"{level} {code!r} is not a child of {parent_code!r}"
                )
        elif not is_structural_child(parent_code, code, level):
            raise InvalidSelectionPath(f"{level} {code!r} is not a child of {parent_code!r}")

    def _check_path(self, selection: SelectionState) -> None:
        if selection.province_code:
            self._check_province(selection.province_code)
        if selection.regency_code:
            self._check_child(REGENCY, selection.province_code, selection.regency_code)
        if selection.district_code:
            self._check_child(DISTRICT, selection.regency_code, selection.district_code)
