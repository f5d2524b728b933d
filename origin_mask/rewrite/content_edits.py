import logging
import re
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List

from bs4 import BeautifulSoup, NavigableString, Tag

from origin_mask.models import ContentEditRule, ElementSelector

logger = logging.getLogger("uvicorn.error")

# "$13.67", "$ 1,299.90", "$5" but not "R$68,35" or "US$10".
# Amounts that only partly fit ("$1234.567", "$12,34") are left alone.
CURRENCY_PATTERN = re.compile(
    r"(?<![A-Za-z$])\$\s?(\d{1,3}(?:,\d{3})+|\d+)(?:\.(\d{1,2}))?(?![.,]?\d)"
)

# Text inside these elements is never edited
_SKIPPED_PARENTS = {"script", "style", "noscript", "template", "textarea"}


def format_currency(amount: Decimal, symbol: str) -> str:
    """Format with '.' thousands and ',' decimal separators: 1234.5 -> 'R$1.234,50'."""
    quantized = amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    formatted = f"{quantized:,.2f}"
    formatted = formatted.replace(",", "\x00").replace(".", ",").replace("\x00", ".")
    return f"{symbol}{formatted}"


def convert_currency_text(text: str, rate: Decimal, symbol: str) -> str:
    def _convert(match: re.Match) -> str:
        whole = match.group(1).replace(",", "")
        cents = match.group(2) or "0"
        return format_currency(Decimal(f"{whole}.{cents}") * rate, symbol)

    return CURRENCY_PATTERN.sub(_convert, text)


def _is_editable_string(node) -> bool:
    # Comments, CDATA and doctypes are NavigableString subclasses
    if type(node) is not NavigableString:
        return False
    return not any(parent.name in _SKIPPED_PARENTS for parent in node.parents)


def _editable_strings(root) -> List[NavigableString]:
    return [s for s in root.find_all(string=True) if _is_editable_string(s)]


def find_elements(soup: BeautifulSoup, selector: ElementSelector) -> List[Tag]:
    if selector.id is not None:
        return soup.find_all(id=selector.id)
    if selector.class_ is not None:
        return soup.find_all(class_=selector.class_)
    if selector.css is not None:
        return soup.select(selector.css)
    if selector.text is not None:
        wanted = selector.text.strip()
        matches = [s.parent for s in _editable_strings(soup) if s.strip() == wanted]
    elif selector.text_contains is not None:
        matches = [
            s.parent for s in _editable_strings(soup) if selector.text_contains in s
        ]
    else:
        return []
    # Several strings may share one parent
    unique = []
    for element in matches:
        if not any(element is seen for seen in unique):
            unique.append(element)
    return unique


class ContentEditor:
    """Applies declarative content edit rules to a parsed document."""

    def __init__(
        self,
        rules: Iterable[ContentEditRule],
        exchange_rate: Decimal = Decimal("5.00"),
        currency_symbol: str = "R$",
    ):
        self.rules = list(rules)
        self.exchange_rate = Decimal(exchange_rate)
        self.currency_symbol = currency_symbol

    def rules_for(self, page_path: str) -> List[ContentEditRule]:
        return [rule for rule in self.rules if rule.applies_to(page_path)]

    def apply(self, soup: BeautifulSoup, page_path: str) -> int:
        """Apply every rule matching the page. Returns how many rules changed the document."""
        applied = 0
        for rule in self.rules_for(page_path):
            if self.apply_rule(soup, rule):
                applied += 1
        return applied

    def apply_rule(self, soup: BeautifulSoup, rule: ContentEditRule) -> bool:
        if rule.operation == "convert_currency":
            return self._convert_currency(soup, rule)

        elements = find_elements(soup, rule.selector)
        if not elements:
            if rule.append_if_missing:
                self._append_fallback(soup, rule)
                return True
            logger.debug(f"[Rewrite] No element for {rule.selector} and no fallback")
            return False

        for element in elements:
            if rule.operation == "set_text":
                element.string = rule.value
            elif rule.operation == "set_attribute":
                element[rule.attribute] = rule.value
            elif rule.operation == "replace_text":
                for node in _editable_strings(element):
                    if rule.search in node:
                        node.replace_with(node.replace(rule.search, rule.value))
        return True

    def _convert_currency(self, soup: BeautifulSoup, rule: ContentEditRule) -> bool:
        if rule.selector.is_empty:
            roots = [soup.body or soup]
        else:
            roots = find_elements(soup, rule.selector)
        changed = False
        for root in roots:
            for node in _editable_strings(root):
                converted = convert_currency_text(
                    str(node), self.exchange_rate, self.currency_symbol
                )
                if converted != node:
                    node.replace_with(converted)
                    changed = True
        return changed

    def _append_fallback(self, soup: BeautifulSoup, rule: ContentEditRule) -> None:
        parent = soup.select_one(rule.fallback_parent) or soup.body or soup
        element = soup.new_tag(rule.fallback_tag)
        if rule.selector.id is not None:
            element["id"] = rule.selector.id
        if rule.selector.class_ is not None:
            element["class"] = rule.selector.class_
        if rule.operation == "set_attribute":
            element[rule.attribute] = rule.value
        else:
            element.string = rule.value
        parent.append(element)
        logger.info(
            f"[Rewrite] Selector {rule.selector.model_dump(exclude_none=True)} missing, "
            f"appended <{rule.fallback_tag}> to {rule.fallback_parent}"
        )
