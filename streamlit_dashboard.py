"""
Library Operations Dashboard
Displays inventory and lending statistics, active and overdue borrowings,
members with fines, and a question box for the library chatbot using Streamlit
"""

import streamlit as st
import pandas as pd
from datetime import datetime

from config import Config
from library_service import LibraryService


# Helper functions
def stats_metrics(stats):
    """(label, value) pairs for the metric tiles, in display order."""
    return [
        ("Total Books", stats.total_books),
        ("Available Books", stats.available_books),
        ("Borrowed Books", stats.borrowed_books),
        ("Total Transactions", stats.total_transactions),
        ("Active Borrowings", stats.active_borrowings),
        ("Overdue Borrowings", stats.overdue_borrowings),
    ]


def loans_frame(records, now=None):
    now = now or datetime.now()
    columns = ['Transaction', 'Title', 'ISBN', 'Borrower', 'Member ID', 'Borrowed', 'Due', 'Overdue']
    if not records:
        return pd.DataFrame(columns=columns)
    return pd.DataFrame([
        {
            'Transaction': r.loan_id,
            'Title': r.book_title,
            'ISBN': r.isbn,
            'Borrower': r.borrower_name,
            'Member ID': r.member_id or '',
            'Borrowed': r.borrowed_date,
            'Due': r.due_date,
            'Overdue': r.due_date < now,
        }
        for r in records
    ], columns=columns)


def fined_members_frame(fined):
    columns = ['Name', 'Member ID', 'Fined Returns', 'Total Fines', 'Last Fine']
    if not fined:
        return pd.DataFrame(columns=columns)
    return pd.DataFrame([
        {
            'Name': m.name,
            'Member ID': m.member_id or 'Not recorded',
            'Fined Returns': m.fine_count,
            'Total Fines': m.total_fine,
            'Last Fine': m.latest_fine_date,
        }
        for m in fined
    ], columns=columns)


@st.cache_resource
def load_service(db_url):
    return LibraryService.from_url(db_url)


def main():
    st.set_page_config(
        page_title="Library Operations Dashboard",
        layout="wide",
        initial_sidebar_state="expanded"
    )

    st.title("📚 Library Operations Dashboard")
    st.markdown("---")

    config = Config()
    service = load_service(config.DB_URL)
    now = datetime.now()

    # Section 1: Inventory and lending stats
    st.header("📊 Inventory & Lending")
    metrics = stats_metrics(service.dashboard_stats())
    for column, (label, value) in zip(st.columns(len(metrics)), metrics):
        with column:
            st.metric(label, value)

    # Section 2: Active borrowings, soonest due first
    st.markdown("---")
    st.header("📖 Active Borrowings")
    active = loans_frame(service.list_active(), now)
    if len(active) > 0:
        overdue_count = int(active['Overdue'].sum())
        if overdue_count:
            st.warning(f"{overdue_count} borrowing(s) are overdue")
        st.dataframe(active, use_container_width=True)
    else:
        st.info("✅ No active borrowings!")

    # Section 3: Members with fines
    st.markdown("---")
    st.header("💰 Members With Fines")
    fined = fined_members_frame(service.reporting.members_with_fines())
    if len(fined) > 0:
        st.dataframe(fined, use_container_width=True)
        st.caption(f"Fines are in {config.FINE_CURRENCY}; the list does not track later payments.")
    else:
        st.info("✅ No recorded fines!")

    # Section 4: Chatbot
    st.markdown("---")
    st.header("💬 Ask the Library")
    with st.form("ask"):
        message = st.text_input("Question", placeholder="Which members currently have fines?")
        member_id = st.text_input("Member ID (optional)", placeholder="MEM20261234")
        submitted = st.form_submit_button("Ask")
    if submitted:
        st.text(service.ask(message, member_id or None))


if __name__ == "__main__":
    main()
