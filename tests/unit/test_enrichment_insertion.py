from __future__ import annotations

from coursegen.pipeline.contracts import EnrichmentResource
from coursegen.pipeline.enrichment import BLOCK_END, BLOCK_START, SUPPLEMENT_HEADING, insert_resources, strip_enrichment

ARTICLE = "Opening paragraph.\n\n## One\n\nFirst part.\n\n## Two\n\nSecond part.\n\n## Three\n\nThird part.\n"


def _resource(title: str, placement: str, **extra: str) -> EnrichmentResource:
  return EnrichmentResource.model_validate({"title": title, "placement": placement, **extra})


def test_resources_land_relative_to_headings() -> None:
  resources = [
    _resource("Intro Video", "introduction", url="https://example.com/intro"),
    _resource("Deep Dive", "middle", search_query="python deep dive"),
    _resource("Recap Sheet", "conclusion", description="One page summary."),
    _resource("Reference", "supplement"),
  ]

  enriched = insert_resources(ARTICLE, resources)

  positions = {marker: enriched.index(marker) for marker in ("Intro Video", "## One", "Deep Dive", "## Two", "Recap Sheet", "## Three", SUPPLEMENT_HEADING)}
  assert positions["Intro Video"] < positions["## One"] < positions["Deep Dive"] < positions["## Two"]
  assert positions["## Two"] < positions["Recap Sheet"] < positions["## Three"] < positions[SUPPLEMENT_HEADING]
  assert "> [https://example.com/intro](https://example.com/intro)" in enriched
  assert '> Search for: "python deep dive"' in enriched
  assert enriched.count(BLOCK_START) == enriched.count(BLOCK_END) == 4


def test_reapplying_enrichment_is_stable() -> None:
  resources = [_resource("Intro Video", "introduction"), _resource("Reference", "supplement")]

  once = insert_resources(ARTICLE, resources)

  assert insert_resources(once, resources) == once
  assert strip_enrichment(once) == ARTICLE


def test_placements_without_enough_headings_fall_back_to_the_end() -> None:
  enriched = insert_resources("Just one paragraph.\n", [_resource("Extra", "middle")])

  assert enriched.startswith("Just one paragraph.\n")
  assert enriched.rstrip().endswith(BLOCK_END)
  assert SUPPLEMENT_HEADING not in enriched


def test_resources_sharing_an_anchor_share_one_block() -> None:
  enriched = insert_resources(ARTICLE, [_resource("First", "introduction"), _resource("Second", "introduction")])

  assert enriched.count(BLOCK_START) == 1
  assert enriched.index("First") < enriched.index("Second") < enriched.index("## One")
