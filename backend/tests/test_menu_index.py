import pytest

from siparis_nlu.core.errors import MenuExportError, MenuIndexStale
from siparis_nlu.schemas.menu import CanonicalMenuExport
from siparis_nlu.services.nlu.menu_index import MenuIndexRegistry, SynonymEntry, build_menu_index

from conftest import TENANT, menu_export_payload


def test_build_skips_inactive_items(menu_index):
    assert menu_index.item("adana").name == "Adana Kebap"
    assert menu_index.item("beyti") is None
    assert menu_index.item("ayran").category == "İçecekler"


def test_item_names_are_indexed_as_synonyms(menu_index):
    phrases = {(s.phrase, s.target) for s in menu_index.synonyms}
    assert ("lahmacun", ("item", "lahmacun")) in phrases
    assert ("adana kebap", ("item", "adana")) in phrases
    # authored synonym with the same phrase is not duplicated
    assert sum(1 for s in menu_index.synonyms if s.phrase == "tavuk sis") == 1


def test_option_groups_and_effective_limits(menu_index):
    groups = menu_index.groups_for_item("kola")
    assert [g.name for g in groups] == ["Boy"]
    boy = groups[0]
    assert boy.effective_min == 1
    assert boy.effective_max == 1
    assert boy.find_option("buyuk").price_delta == 10
    sos = menu_index.find_group("tavuk-doner", "sos")
    assert sos.effective_min == 0
    assert sos.effective_max == 2


def test_synonym_must_map_to_exactly_one_target():
    with pytest.raises(ValueError):
        SynonymEntry(phrase="x", weight=0.5, maps_to_item_id="a", maps_to_option_id="b")
    with pytest.raises(ValueError):
        SynonymEntry(phrase="x", weight=0.5)
    with pytest.raises(ValueError):
        SynonymEntry(phrase="x", weight=1.5, maps_to_item_id="a")


def test_unknown_synonym_targets_are_skipped():
    payload = menu_export_payload()
    payload["synonyms"].append({"phrase": "beyti", "mapsTo": {"type": "item", "id": "beyti"}, "weight": 1.0})
    payload["synonyms"].append({"phrase": "ekstra acı", "mapsTo": {"type": "option", "id": "yok"}, "weight": 1.0})
    index = build_menu_index(CanonicalMenuExport.model_validate(payload))
    assert all(s.phrase not in ("beyti", "ekstra aci") for s in index.synonyms)


def test_duplicate_item_ids_rejected():
    payload = menu_export_payload()
    payload["categories"][1]["items"].append({"id": "adana", "name": "Adana Dürüm", "basePrice": 190})
    with pytest.raises(MenuExportError):
        build_menu_index(CanonicalMenuExport.model_validate(payload))


def test_registry_requires_publish():
    registry = MenuIndexRegistry()
    with pytest.raises(MenuIndexStale):
        registry.get(TENANT)
    assert registry.peek(TENANT) is None


def test_republish_swaps_index_and_old_reference_stays_intact():
    registry = MenuIndexRegistry()
    first = registry.publish(CanonicalMenuExport.model_validate(menu_export_payload(version=1)))

    payload = menu_export_payload(version=2)
    payload["categories"][0]["items"].append({"id": "iskender", "name": "İskender", "basePrice": 280})
    second = registry.publish(CanonicalMenuExport.model_validate(payload))

    assert registry.get(TENANT) is second
    assert second.item("iskender") is not None
    assert first.item("iskender") is None
    assert first.version == 1


def test_older_version_is_ignored():
    registry = MenuIndexRegistry()
    current = registry.publish(CanonicalMenuExport.model_validate(menu_export_payload(version=3)))
    returned = registry.publish(CanonicalMenuExport.model_validate(menu_export_payload(version=2)))
    assert returned is current
    assert registry.get(TENANT).version == 3


def test_summary_counts(menu_index):
    summary = menu_index.summary()
    assert summary.tenant_id == TENANT
    assert summary.item_count == 7
    assert summary.option_group_count == 3
    assert summary.synonym_count == len(menu_index.synonyms)


def test_same_version_is_ignored():
    registry = MenuIndexRegistry()
    current = registry.publish(CanonicalMenuExport.model_validate(menu_export_payload(version=2)))

    payload = menu_export_payload(version=2)
    payload["categories"][0]["items"].append({"id": "iskender", "name": "İskender", "basePrice": 280})
    returned = registry.publish(CanonicalMenuExport.model_validate(payload))

    assert returned is current
    assert registry.get(TENANT).item("iskender") is None
