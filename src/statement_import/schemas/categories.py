"""
Category taxonomy for bank transactions.

Every category has a type that decides how the transaction hits the books:

| Type       | affects_pnl | balance_impact      |
|------------|-------------|---------------------|
| INCOME     | true        | equity_increase     |
| EXPENSE    | true        | equity_decrease     |
| PARTNER    | false       | asset/liability     |
| INVESTMENT | false       | asset_increase      |
| FINANCING  | false       | liability_increase  |
| EXCLUDED   | false       | none                |
"""

import logging
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class CategoryType(str, Enum):
    """Accounting treatment of a category."""

    INCOME = "INCOME"
    EXPENSE = "EXPENSE"
    PARTNER = "PARTNER"
    INVESTMENT = "INVESTMENT"
    FINANCING = "FINANCING"
    EXCLUDED = "EXCLUDED"

    @property
    def affects_pnl(self) -> bool:
        return self in (CategoryType.INCOME, CategoryType.EXPENSE)


BALANCE_IMPACTS = (
    "equity_increase",
    "equity_decrease",
    "asset_increase",
    "liability_increase",
    "none",
)


@dataclass(frozen=True)
class Category:
    """A category the model may assign."""

    code: str
    name: str
    type: CategoryType
    keywords: tuple[str, ...] = ()

    @property
    def affects_pnl(self) -> bool:
        return self.type.affects_pnl


def _c(code: str, name: str, type_: CategoryType, *keywords: str) -> Category:
    return Category(code=code, name=name, type=type_, keywords=keywords)


_I = CategoryType.INCOME
_E = CategoryType.EXPENSE

DEFAULT_CATEGORIES: tuple[Category, ...] = (
    # Income (positive amounts)
    _c("SBT", "Carbon tracking services", _I, "SBT", "KARBON", "CARBON", "EMISYON"),
    _c("L&S", "Leadership and audit", _I, "LEADERSHIP", "DENETIM", "AUDIT", "ASSESSMENT"),
    _c("DANIS", "Consulting", _I, "DANISMANLIK", "CONSULTING", "CONSULTANCY"),
    _c("ZDHC", "Chemical compliance", _I, "ZDHC", "INCHECK", "MRSL", "GATEWAY"),
    _c("MASRAF", "Expense refund", _I, "MASRAF IADE", "EXPENSE REFUND"),
    _c("BAYI", "Dealer commission", _I, "BAYI", "KOMISYON GELIR", "DEALER"),
    _c("EGITIM_IN", "Training income", _I, "EGITIM", "SEMINER", "TRAINING", "WORKSHOP"),
    _c("RAPOR", "Reports and certificates", _I, "RAPOR", "REPORT", "SERTIFIKA"),
    _c("FAIZ_IN", "Interest income", _I, "FAIZ GELIRI", "INTEREST INCOME", "MEVDUAT FAIZ"),
    _c("KIRA_IN", "Rental income", _I, "KIRA GELIR", "RENT INCOME"),
    _c("DOVIZ_IN", "FX sale", _I, "DOVIZ SAT", "FX SELL"),
    _c("DIGER_IN", "Other income", _I),
    # Expense (negative amounts)
    _c("SEYAHAT", "Travel", _E, "UCAK", "OTEL", "HOTEL", "BOOKING", "THY", "PEGASUS"),
    _c("FUAR", "Fairs and advertising", _E, "FUAR", "STAND", "REKLAM", "GOOGLE ADS"),
    _c("HGS", "Fuel and tolls", _E, "HGS", "OGS", "YAKIT", "PETROL", "SHELL", "OPET"),
    _c("SIGORTA", "Insurance", _E, "SIGORTA", "KASKO", "ALLIANZ", "AXA", "POLICE"),
    _c("TELEKOM", "Telecom", _E, "TURKCELL", "VODAFONE", "TURK TELEKOM"),
    _c("BANKA", "Bank fees", _E, "KOMISYON", "EFT MASRAF", "HAVALE MASRAF", "KART AIDAT"),
    _c("OFIS", "Office supplies", _E, "KIRTASIYE", "OFIS", "OFFICE", "TONER"),
    _c("YEMEK", "Meals", _E, "YEMEK", "RESTAURANT", "CAFE", "STARBUCKS", "GETIR"),
    _c("PERSONEL", "Payroll", _E, "MAAS", "BORDRO", "SGK", "SSK", "PERSONEL"),
    _c("YAZILIM", "Software", _E, "YAZILIM", "SOFTWARE", "ADOBE", "MICROSOFT", "AWS"),
    _c("MUHASEBE", "Accounting", _E, "MUHASEBE", "MALI MUSAVIR", "SMMM", "BEYANNAME"),
    _c("HUKUK", "Legal", _E, "AVUKAT", "HUKUK", "NOTER", "DAVA"),
    _c("VERGI", "Taxes", _E, "VERGI", "KDV", "STOPAJ", "MTV", "DAMGA", "GIB"),
    _c("KIRA_OUT", "Rent", _E, "KIRA", "RENT", "OFIS KIRA"),
    _c("KARGO", "Shipping", _E, "KARGO", "NAKLIYE", "ARAS", "MNG", "UPS", "DHL", "PTT"),
    _c("HARICI", "External services", _E, "HARICI DANISMAN", "DIS HIZMET", "TASERON"),
    _c("IADE", "Refunds paid", _E, "IADE", "REFUND", "RETURN", "GERI ODEME"),
    _c("DOVIZ_OUT", "FX purchase", _E, "DOVIZ AL", "FX BUY"),
    _c("KREDI_OUT", "Loan instalment", _E, "KREDI TAKSIT", "LOAN PAYMENT", "TAKSIT"),
    _c("DIGER_OUT", "Other expense", _E),
    # Partner current account
    _c("ORTAK_OUT", "Partner withdrawal", CategoryType.PARTNER, "ORTAK", "SAHSI", "KISISEL"),
    _c("ORTAK_IN", "Partner deposit", CategoryType.PARTNER, "ORTAK YATIRMA", "SERMAYE"),
    # Investment
    _c("EKIPMAN", "Equipment", CategoryType.INVESTMENT, "EKIPMAN", "MAKINE", "BILGISAYAR"),
    _c("ARAC", "Vehicles", CategoryType.INVESTMENT, "ARAC", "OTOMOBIL", "TASIT"),
    # Financing
    _c("KREDI_IN", "Loan disbursement", CategoryType.FINANCING, "KREDI KULLANIM"),
    _c("LEASING", "Leasing", CategoryType.FINANCING, "LEASING", "FINANSAL KIRALAMA"),
    _c("FAIZ_OUT", "Interest expense", CategoryType.FINANCING, "FAIZ GIDERI", "KREDI FAIZ"),
    # Excluded from all statements
    _c("IC_TRANSFER", "Internal transfer", CategoryType.EXCLUDED, "VIRMAN", "HESAPLAR ARASI"),
    _c("NAKIT_CEKME", "Cash withdrawal", CategoryType.EXCLUDED, "ATM", "NAKIT CEKIM"),
    _c("EXCLUDED", "Excluded", CategoryType.EXCLUDED, "HATA DUZELTME", "TERS KAYIT"),
)


class CategoryTaxonomy:
    """Lookup and fuzzy matching over a set of categories."""

    def __init__(self, categories: tuple[Category, ...] | list[Category] = DEFAULT_CATEGORIES):
        self.categories = list(categories)
        self._by_code = {c.code.upper(): c for c in self.categories}

    def __contains__(self, code: object) -> bool:
        return isinstance(code, str) and code.upper() in self._by_code

    def __len__(self) -> int:
        return len(self.categories)

    @property
    def codes(self) -> list[str]:
        return [c.code for c in self.categories]

    def get(self, code: str | None) -> Category | None:
        if not code:
            return None
        return self._by_code.get(code.strip().upper())

    def type_of(self, code: str | None) -> CategoryType | None:
        category = self.get(code)
        return category.type if category else None

    def match(self, raw: str | None) -> Category | None:
        """Fuzzy match a code or name returned by the model.

        Exact code, then exact name, then substring, then word overlap.
        """
        if not raw:
            return None

        exact = self.get(raw)
        if exact:
            return exact

        raw_lower = raw.lower().strip()

        for cat in self.categories:
            if cat.name.lower() == raw_lower:
                return cat

        for cat in self.categories:
            code = cat.code.lower()
            if raw_lower in code or code in raw_lower.replace(" ", "_"):
                return cat

        raw_words = set(raw_lower.replace("_", " ").split())
        best_match = None
        best_overlap = 0
        for cat in self.categories:
            cat_words = set(cat.name.lower().split())
            overlap = len(raw_words & cat_words)
            if overlap > best_overlap:
                best_overlap = overlap
                best_match = cat

        if best_overlap > 0:
            return best_match

        logger.debug("Could not match category '%s' to the taxonomy", raw)
        return None

    def describe(self) -> str:
        """Taxonomy as prompt lines: CODE | TYPE | name | keywords."""
        lines = []
        for cat in self.categories:
            keywords = ", ".join(cat.keywords) if cat.keywords else "-"
            lines.append(f"{cat.code} | {cat.type.value} | {cat.name} | {keywords}")
        return "\n".join(lines)
