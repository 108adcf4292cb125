"""
Kubernetes label selector matching for stores that filter locally. For the
complete syntax see:
https://kubernetes.io/docs/concepts/overview/working-with-objects/labels/#label-selectors
"""

# Standard
from typing import Dict, List, Optional

# First Party
import alog

log = alog.use_channel("SELECT")


def match_label_selector(labels: Dict[str, str], selector: Optional[str]) -> bool:
    """Check whether a set of labels satisfies every requirement of a
    selector. Supports =, ==, !=, in, notin, key and !key.

    Args:
        labels:  Dict[str, str]
            The labels of the object
        selector:  Optional[str]
            The selector string. None or empty matches everything

    Returns:
        matches:  bool
            True if every requirement matches
    """
    if not selector:
        return True

    for requirement in split_selector(selector):
        requirement = requirement.strip()
        if not requirement:
            continue
        if not _match_requirement(labels, requirement):
            log.debug3("Labels %s do not match requirement %s", labels, requirement)
            return False
    return True


def split_selector(selector: str) -> List[str]:
    """Split a selector on commas that are not inside parentheses, e.g.
    'app,tier in (frontend, backend)' becomes ['app', 'tier in (frontend, backend)']
    """
    output_list = []
    current = ""
    depth = 0
    for char in selector:
        if char == "," and depth == 0:
            output_list.append(current)
            current = ""
            continue
        if char == "(":
            depth += 1
        elif char == ")":
            depth = max(depth - 1, 0)
        current += char
    if current:
        output_list.append(current)
    return output_list


## Implementation Details ######################################################


def _match_requirement(labels: Dict[str, str], requirement: str) -> bool:
    # Set based operators need surrounding spaces to be told apart from keys
    for operator_str, negate in [(" notin ", True), (" in ", False)]:
        if operator_str in requirement:
            key, values = requirement.split(operator_str, 1)
            value_set = {
                value.strip() for value in values.strip().strip("()").split(",")
            }
            found = labels.get(key.strip()) in value_set
            return not found if negate else found

    # Check != before = since = is a substring of it
    for operator_str, negate in [("!=", True), ("==", False), ("=", False)]:
        if operator_str in requirement:
            key, value = requirement.split(operator_str, 1)
            matches = labels.get(key.strip()) == value.strip()
            return not matches if negate else matches

    if requirement.startswith("!"):
        return requirement[1:].strip() not in labels
    return requirement in labels
