from hachevents.models import TicketOption

PERSIAN_DIGITS = str.maketrans("0123456789,", "۰۱۲۳۴۵۶۷۸۹٬")
FREE_LABEL = "رایگان"


def to_persian_digits(value: str) -> str:
    return value.translate(PERSIAN_DIGITS)


def format_price(price: int) -> str:
    if price == 0:
        return FREE_LABEL
    return f"{to_persian_digits(f'{price:,}')} تومان"


def ticket_label(ticket: TicketOption) -> str:
    return f"{ticket.name} ({format_price(ticket.price)})"
