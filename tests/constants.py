from datetime import date

from domain.line_items import LedgerAccount

CASH = "Bargeld"
CARD = "Zahlkart"
COMPOSED = "COMPOSED_PRODUCT"

CASH_ACCOUNT_ALICE = LedgerAccount("1000")
CASH_ACCOUNT_BOB = LedgerAccount("1001")
MASTERCARD_ACCOUNT = LedgerAccount("1100")
REVENUE_ACCOUNT = LedgerAccount("3200")
VAT_FREE_ACCOUNT = LedgerAccount("3900")

MONDAY = date(2021, 11, 1)
SUNDAY = date(2021, 10, 31)
SATURDAY = date(2021, 10, 30)
