from datetime import date

from coursebilling.db.models import PaymentType, TransactionStatus
from coursebilling.services.results import Success

VISA = {"number": "4242424242424242", "brand": "visa", "exp_month": 12, "exp_year": 2030}
MASTERCARD = {"number": "5555555555554444", "brand": "mastercard", "exp_month": 1, "exp_year": 2023}


async def add(container, user_id, details=VISA, payment_type=PaymentType.CREDIT_CARD, make_default=False):
    return await container.payment_methods.add_payment_method(user_id, payment_type, details, make_default=make_default)


def defaults(container, user_id):
    return [m.id for m in container.payment_methods.list_payment_methods(user_id) if m.is_default]


async def test_first_method_becomes_default(container, user_id):
    result = await add(container, user_id)

    assert isinstance(result, Success)
    method = result.value
    assert method.is_default
    assert method.last_four_digits == "4242"
    assert method.display_name == "visa ****4242"
    assert container.payment_methods.get_default_payment_method(user_id).id == method.id


async def test_raw_details_are_never_stored(container, user_id):
    method = (await add(container, user_id)).value

    assert "4242424242424242" not in method.encrypted_token
    assert container.payments.encryption.decrypt(method.encrypted_token).startswith("tok_4242")


async def test_exactly_one_default_after_any_sequence(container, user_id):
    first = (await add(container, user_id)).value
    second = (await add(container, user_id, MASTERCARD)).value
    assert defaults(container, user_id) == [first.id]

    third = (await add(container, user_id, make_default=True)).value
    assert defaults(container, user_id) == [third.id]

    await container.payment_methods.set_default_payment_method(user_id, second.id)
    assert defaults(container, user_id) == [second.id]

    await container.payment_methods.remove_payment_method(user_id, first.id)
    assert defaults(container, user_id) == [second.id]


async def test_removing_the_default_promotes_the_newest(container, user_id):
    first = (await add(container, user_id)).value
    await add(container, user_id, MASTERCARD)
    newest = (await add(container, user_id)).value

    result = await container.payment_methods.remove_payment_method(user_id, first.id)

    assert result.value == first.id
    assert defaults(container, user_id) == [newest.id]


async def test_removing_the_last_method_leaves_no_default(container, user_id):
    only = (await add(container, user_id)).value

    await container.payment_methods.remove_payment_method(user_id, only.id)

    assert container.payment_methods.get_default_payment_method(user_id) is None


async def test_removal_keeps_transaction_history(container, user_id, course_id):
    method = (await add(container, user_id)).value
    txn = (await container.payments.process_payment(user_id, course_id, "49.99")).value

    await container.payment_methods.remove_payment_method(user_id, method.id)

    kept = container.payments.get_transaction(txn.id)
    assert kept.status == TransactionStatus.COMPLETED
    assert kept.payment_method_id is None


async def test_foreign_method_cannot_be_removed_or_defaulted(container, user_id, other_user_id):
    method = (await add(container, user_id)).value

    removed = await container.payment_methods.remove_payment_method(other_user_id, method.id)
    defaulted = await container.payment_methods.set_default_payment_method(other_user_id, method.id)

    assert removed.code == "UNKNOWN_PAYMENT_METHOD"
    assert defaulted.code == "UNKNOWN_PAYMENT_METHOD"
    assert defaults(container, user_id) == [method.id]


async def test_rejected_instrument_is_not_stored(container, user_id):
    result = await add(container, user_id, {"number": "4000000000000002", "reject": True})

    assert result.code == "INSTRUMENT_REJECTED"
    assert result.error.details["reason"] == "invalid_card"
    assert container.payment_methods.list_payment_methods(user_id) == []


async def test_unknown_user_cannot_add_methods(container):
    result = await add(container, 999)

    assert result.code == "NOT_FOUND"


async def test_expired_cards_and_counts(container, user_id):
    await add(container, user_id)
    expired = (await add(container, user_id, MASTERCARD)).value

    assert [m.id for m in container.payment_methods.expired_payment_methods(user_id, date(2024, 6, 1))] == [expired.id]
    assert container.payment_methods.count_by_type(user_id, PaymentType.CREDIT_CARD) == 2
    assert container.payment_methods.count_by_type(user_id, PaymentType.PAYPAL) == 0
