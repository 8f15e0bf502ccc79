"""
LiveCoach — Bundled demo content

A sandwich-making module, a handwashing remedial module, and the need
catalog that ties them together: raw chicken at the prep station sends the
trainee through handwashing before they continue.
"""

from __future__ import annotations

from typing import Any, Dict, Tuple

from ..core.models import ProcessStep, TrainingModule
from ..processing.needs import NeedCatalog

SANDWICH_MODULE = TrainingModule(
    slug="sandwich-making",
    title="How to Make Our Signature Sandwich",
    steps=(
        ProcessStep(
            "Prepare Your Station",
            "Wash your hands and put on a fresh pair of gloves. Make sure your cutting "
            "board is clean and your knife is sharp.",
            checkpoint="What is the very first thing you should do?",
        ),
        ProcessStep(
            "Toast the Sourdough Bread",
            "Take two slices of sourdough bread and place them in the conveyor toaster "
            "set to level 3. They should come out golden brown, not dark.",
            checkpoint="What setting should the toaster be on?",
        ),
        ProcessStep(
            "Apply the Signature Sauce",
            "Spread one tablespoon of signature aioli on both toasted slices, edge to edge.",
        ),
        ProcessStep(
            "Layer the Turkey",
            "Weigh out 4 ounces of sliced turkey. Fold and layer it evenly on the bottom slice.",
            checkpoint="How much turkey should you use?",
        ),
        ProcessStep(
            "Add Provolone Cheese & Veggies",
            "Place two slices of provolone on the turkey, then three rings of red onion "
            "and a handful of arugula.",
        ),
        ProcessStep(
            "Final Assembly",
            "Put the top slice on, cut the sandwich diagonally and serve with a pickle spear.",
            checkpoint="How is the sandwich cut?",
        ),
    ),
)

HANDWASHING_MODULE = TrainingModule(
    slug="handwashing",
    title="Handwashing Refresher",
    steps=(
        ProcessStep("Wet Your Hands", "Wet both hands under clean running water."),
        ProcessStep("Lather with Soap", "Apply soap and lather the backs of your hands, "
                    "between your fingers and under your nails."),
        ProcessStep("Scrub for 20 Seconds", "Keep scrubbing for at least 20 seconds."),
        ProcessStep("Rinse and Dry", "Rinse well and dry with a clean paper towel. "
                    "Put on a fresh pair of gloves."),
    ),
)

DEMO_MODULES: Tuple[TrainingModule, ...] = (SANDWICH_MODULE, HANDWASHING_MODULE)

DEMO_NEEDS: Dict[str, Any] = {
    "modules": {
        "sandwich-making": {
            "0": {
                "required": ["cutting board", "knife"],
                "forbidden": ["raw chicken"],
                "branch_on": [{"item": "raw chicken", "module": "handwashing"}],
            },
            "1": {"required": ["bread", "toaster"]},
            "2": {"required": ["bread", "spoon"]},
            "3": {"required": ["turkey", "scale"]},
            "4": {"required": ["cheese"], "forbidden": ["raw chicken"]},
            "5": {"required": ["knife", "plate"]},
        },
        "handwashing": {
            "1": {"required": ["soap"]},
            "3": {"required": ["paper towel"]},
        },
    },
    "synonyms": {
        "cutting board": ["chopping board"],
        "bread": ["sandwich", "toast"],
        "toaster": ["oven"],
        "spoon": ["spatula"],
        "cheese": ["provolone"],
        "plate": ["dish"],
        "soap": ["soap dispenser", "bottle"],
        "paper towel": ["towel", "tissue"],
        "raw chicken": ["chicken breast"],
    },
}


def demo_catalog() -> NeedCatalog:
    return NeedCatalog.from_dict(DEMO_NEEDS)
