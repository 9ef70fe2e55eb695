"""
Streamlit Frontend for finledger

A thin caller of the LedgerService. Every form:
1. Validates locally and shows warnings
2. Calls exactly one service method
3. Shows the error's user_message if the ledger refuses

No page computes or writes a balance itself.
"""

import asyncio
from datetime import date, datetime, time, timezone
from decimal import Decimal

import streamlit as st

from finledger.audit import configure_logging
from finledger.config import get_settings, validate_all_settings
from finledger.ledger import LedgerError
from finledger.models.ledger import AccountType, DocumentKind, InvestmentType, TransactionType
from finledger.orchestrator import LedgerService, create_app_components


# Page configuration
st.set_page_config(
    page_title="finledger",
    page_icon="💰",
    layout="wide",
    initial_sidebar_state="expanded",
)


@st.cache_resource
def get_event_loop() -> asyncio.AbstractEventLoop:
    """One loop for the session; async storage clients are bound to the loop that created them."""
    return asyncio.new_event_loop()


def run_async(coro):
    """Helper to run async functions in Streamlit."""
    return get_event_loop().run_until_complete(coro)


@st.cache_resource
def get_service() -> LedgerService:
    """Get or create application components (cached)."""
    configure_logging(get_settings().app.log_level)
    return create_app_components()


def submit(action, success_message: str):
    """Run one ledger action and report the outcome."""
    try:
        result = run_async(action)
    except LedgerError as e:
        st.error(e.user_message)
        return None
    st.success(success_message)
    return result


def show_validation(result, service: LedgerService) -> bool:
    """Show validator output. Returns True when the form may be submitted."""
    if result.issues:
        summary = service.planner.validator.get_user_friendly_summary(result)
        (st.error if result.has_errors else st.warning)(summary)
    return not result.has_errors


def render_dashboard(service: LedgerService, owner_id: str):
    st.title("📊 Dashboard")
    worth = run_async(service.queries.net_worth(owner_id))
    flow = run_async(service.queries.cash_flow(owner_id))

    col1, col2, col3 = st.columns(3)
    col1.metric("Net worth", f"{worth.total:,.2f}")
    col2.metric("Income", f"{flow.income:,.2f}")
    col3.metric("Expenses", f"{flow.expenses:,.2f}")

    spending = run_async(service.queries.spending_by_category(owner_id))
    if spending:
        st.subheader("Spending by category")
        st.bar_chart({category: float(amount) for category, amount in spending.items()})

    st.subheader("Recent transactions")
    recent = run_async(service.queries.list_transactions(owner_id, limit=10))
    if recent:
        st.table([
            {
                "Date": t.occurred_at.date().isoformat(),
                "Category": t.category,
                "Type": t.transaction_type.value,
                "Amount": f"{t.amount:,.2f}",
            }
            for t in recent
        ])
    else:
        st.info("No transactions yet.")


def render_accounts(service: LedgerService, owner_id: str):
    st.title("🏦 Accounts")
    accounts = run_async(service.queries.list_accounts(owner_id))
    for account in accounts:
        label = "owed" if account.is_credit else "balance"
        st.markdown(f"**{account.name}** ({account.account_type.value}): {account.balance:,.2f} {account.currency} {label}")

    with st.form("add_account"):
        st.subheader("Add account")
        name = st.text_input("Name")
        account_type = st.selectbox("Type", [t.value for t in AccountType])
        currency = st.text_input("Currency", value=get_settings().ledger.default_currency)
        opening = st.number_input("Opening balance (amount owed for credit cards)", value=0.0, step=10.0)
        if st.form_submit_button("Create account"):
            result = service.planner.validator.validate_account(name, account_type, currency, opening)
            if show_validation(result, service):
                submit(
                    service.create_account(owner_id, name, AccountType(account_type), currency, Decimal(str(opening))),
                    "Account created.",
                )

    if accounts:
        with st.form("add_money"):
            st.subheader("Add money")
            names = {a.name: a.id for a in accounts}
            chosen = st.selectbox("Account", list(names))
            amount = st.number_input("Amount", min_value=0.0, step=10.0)
            if st.form_submit_button("Add"):
                submit(service.fund_account(owner_id, names[chosen], Decimal(str(amount))), "Funds added.")

        if st.button("Check balances"):
            for report in run_async(service.reconcile_all(owner_id)):
                if report.is_consistent:
                    st.success(f"{report.entity_id}: consistent")
                else:
                    st.warning(f"{report.entity_id}: stored {report.stored_balance}, computed {report.computed_balance}")


def render_transactions(service: LedgerService, owner_id: str):
    st.title("💸 Transactions")
    accounts = run_async(service.queries.list_accounts(owner_id))
    if not accounts:
        st.info("Create an account first.")
        return
    names = {a.name: a.id for a in accounts}

    with st.form("add_transaction"):
        chosen = st.selectbox("Account", list(names))
        transaction_type = st.selectbox("Type", [t.value for t in TransactionType])
        amount = st.number_input("Amount", min_value=0.0, step=1.0)
        category = st.text_input("Category")
        occurred = st.date_input("Date", value=date.today())
        description = st.text_input("Description")
        if st.form_submit_button("Save transaction"):
            occurred_at = datetime.combine(occurred, time(12), tzinfo=timezone.utc)
            result = service.planner.validator.validate_transaction(
                amount, transaction_type, category, occurred_at, description,
            )
            if show_validation(result, service):
                submit(
                    service.create_transaction(
                        owner_id, names[chosen], Decimal(str(amount)), TransactionType(transaction_type),
                        category, occurred_at, description,
                    ),
                    "Transaction saved.",
                )

    for t in run_async(service.queries.list_transactions(owner_id, limit=25)):
        col1, col2 = st.columns([4, 1])
        col1.write(f"{t.occurred_at.date()} · {t.category} · {t.amount:,.2f}")
        if not t.is_linked and col2.button("Delete", key=f"del-{t.id}"):
            submit(service.delete_transaction(owner_id, t.id), "Transaction deleted.")


def render_goals(service: LedgerService, owner_id: str):
    st.title("🎯 Savings Goals")
    accounts = run_async(service.queries.list_accounts(owner_id))
    names = {a.name: a.id for a in accounts}

    for goal in run_async(service.queries.goal_progress(owner_id)):
        st.markdown(f"**{goal.name}**: {goal.current_amount:,.2f} / {goal.target_amount:,.2f}")
        st.progress(goal.progress)
        if names:
            with st.form(f"fund-{goal.goal_id}"):
                chosen = st.selectbox("From account", list(names), key=f"src-{goal.goal_id}")
                amount = st.number_input("Amount", min_value=0.0, step=10.0, key=f"amt-{goal.goal_id}")
                if st.form_submit_button("Add funds"):
                    submit(
                        service.contribute_to_goal(owner_id, goal.goal_id, names[chosen], Decimal(str(amount))),
                        f"Added funds to {goal.name}.",
                    )

    with st.form("add_goal"):
        st.subheader("New goal")
        name = st.text_input("Goal name")
        target = st.number_input("Target amount", min_value=0.0, step=100.0)
        target_date = st.date_input("Target date", value=None)
        initial = st.number_input("Initial amount", min_value=0.0, step=10.0)
        source = st.selectbox("Fund initial amount from", ["No source account"] + list(names))
        if st.form_submit_button("Create goal"):
            submit(
                service.create_goal(
                    owner_id, name, Decimal(str(target)), target_date, Decimal(str(initial)),
                    names.get(source),
                ),
                "Savings goal added.",
            )


def render_investments(service: LedgerService, owner_id: str):
    st.title("📈 Investments")
    summary = run_async(service.queries.portfolio(owner_id))
    st.metric("Portfolio value", f"{summary.current_value:,.2f}", f"{summary.gain:,.2f}")

    holdings = run_async(service.ledger_store.list_documents(owner_id, DocumentKind.INVESTMENT))
    for holding in holdings:
        col1, col2, col3 = st.columns([4, 1, 1])
        col1.write(f"{holding.ticker} · {holding.quantity} @ {holding.purchase_price} · value {holding.current_value:,.2f}")
        if col2.button("Refresh", key=f"refresh-{holding.id}"):
            if run_async(service.refresh_investment_value(owner_id, holding.id)) is None:
                st.warning("Price unavailable right now; value left unchanged.")
        if col3.button("Delete", key=f"delinv-{holding.id}"):
            submit(service.delete_investment(owner_id, holding.id), "Investment deleted and cost refunded.")

    accounts = run_async(service.queries.list_accounts(owner_id))
    if not accounts:
        return
    names = {a.name: a.id for a in accounts}
    with st.form("buy"):
        st.subheader("Buy")
        chosen = st.selectbox("Pay from", list(names))
        name = st.text_input("Name")
        ticker = st.text_input("Ticker")
        investment_type = st.selectbox("Type", [t.value for t in InvestmentType])
        quantity = st.number_input("Quantity", min_value=0.0, step=1.0)
        price = st.number_input("Price", min_value=0.0, step=1.0)
        if st.form_submit_button("Buy"):
            submit(
                service.purchase_investment(
                    owner_id, names[chosen], name, ticker, Decimal(str(quantity)), Decimal(str(price)),
                    InvestmentType(investment_type),
                ),
                "Investment added and account balance updated.",
            )


def render_insights(service: LedgerService, owner_id: str):
    st.title("💡 Insights")
    spending = st.text_area("Describe your current spending habits (leave empty to use your records)")
    goals = st.text_area("What are your financial goals? (leave empty to use your goals)")
    if st.button("Get insights"):
        with st.spinner("Thinking..."):
            result = submit(service.generate_insights(owner_id, spending, goals), "Here are your insights.")
        if result is not None:
            st.markdown(result.insights)


def render_settings_page():
    st.title("⚙️ Settings")
    status = validate_all_settings()
    for name, key in [("Firestore", "firestore"), ("Gemini (AI)", "gemini"), ("Ledger", "ledger"), ("App", "app")]:
        if status.get(key, False):
            st.success(f"✅ {name} - Configured")
        else:
            st.error(f"❌ {name} - {status.get(f'{key}_error', 'Not configured')}")


def main():
    """Main application entry point."""
    service = get_service()

    st.sidebar.title("💰 finledger")
    # Sign-in is handled upstream; the owner id scopes every read and write.
    owner_id = st.sidebar.text_input("User id", value=st.session_state.get("owner_id", "demo"))
    st.session_state.owner_id = owner_id

    page = st.sidebar.radio(
        "Navigate to:",
        ["📊 Dashboard", "🏦 Accounts", "💸 Transactions", "🎯 Goals", "📈 Investments", "💡 Insights", "⚙️ Settings"],
    )

    if page == "📊 Dashboard":
        render_dashboard(service, owner_id)
    elif page == "🏦 Accounts":
        render_accounts(service, owner_id)
    elif page == "💸 Transactions":
        render_transactions(service, owner_id)
    elif page == "🎯 Goals":
        render_goals(service, owner_id)
    elif page == "📈 Investments":
        render_investments(service, owner_id)
    elif page == "💡 Insights":
        render_insights(service, owner_id)
    else:
        render_settings_page()


if __name__ == "__main__":
    main()
