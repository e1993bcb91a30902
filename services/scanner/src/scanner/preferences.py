from __future__ import annotations

from common.utils import unique_in_order

from scanner.models import AggregatedPreferences, PreferenceSet


def aggregate_preferences(preference_sets: list[PreferenceSet]) -> AggregatedPreferences:
    active_sets = [preference_set for preference_set in preference_sets if preference_set.active]
    return AggregatedPreferences(
        roles=unique_in_order([role for item in active_sets for role in item.roles]),
        locations=unique_in_order(
            [location for item in active_sets for location in item.locations]
        ),
        companies=unique_in_order(
            [company for item in active_sets for company in item.companies]
        ),
    )
