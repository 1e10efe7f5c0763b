"""Assertion helpers shared by the test modules."""


def balance(uow, account) -> int:
    return uow.accounts.get_by_id(account.id).tokens


def total_value(conn) -> int:
    """Sum of balances plus funds reserved in pending_acceptance transfers."""
    balances = conn.execute("SELECT COALESCE(SUM(tokens), 0) FROM accounts").fetchone()[0]
    reserved = conn.execute(
        "SELECT COALESCE(SUM(amount), 0) FROM token_transactions WHERE status = 'pending_acceptance'"
    ).fetchone()[0]
    return balances + reserved
