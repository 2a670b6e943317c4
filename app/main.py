"""
Streamlit Frontend for the Expense Chat Gateway

A single chat page. The user types requests such as "add electricity
bill 40 for House" or "show my expenses from last month"; the gateway
decides what runs and writes the reply.

DESIGN PRINCIPLES:
1. The page is a thin client: every decision is made by ChatFlow
2. The conversation context returned by the gateway is sent back unchanged
3. Questions from the gateway (create a category?) are shown prominently
4. No hidden actions
"""

import asyncio

import streamlit as st

from expense_gateway.config import validate_all_settings
from expense_gateway.models.chat import ChatMessage, ChatRequest, ConversationContext
from expense_gateway.models.entities import ChatRole
from expense_gateway.orchestrator import ChatFlow, create_app_components


# Page configuration
st.set_page_config(
    page_title="Expense Assistant",
    page_icon="💰",
    layout="wide",
    initial_sidebar_state="expanded",
)

st.markdown("""
<style>
    .confirm-box {
        padding: 16px;
        background-color: #fff3cd;
        border-radius: 10px;
        border-left: 5px solid #ffc107;
        margin: 10px 0;
    }
</style>
""", unsafe_allow_html=True)


@st.cache_resource
def get_loop() -> asyncio.AbstractEventLoop:
    """One event loop for the session; the database engine is bound to it."""
    return asyncio.new_event_loop()


def run_async(coro):
    """Helper to run async functions in Streamlit."""
    loop = get_loop()
    asyncio.set_event_loop(loop)
    return loop.run_until_complete(coro)


@st.cache_resource
def get_components():
    """Get or create application components (cached)."""
    chat_flow, store = create_app_components()
    run_async(store.create_all())
    return chat_flow, store


def init_session() -> None:
    if "history" not in st.session_state:
        st.session_state["history"] = []
    if "context" not in st.session_state:
        st.session_state["context"] = ConversationContext()
    if "requires_confirmation" not in st.session_state:
        st.session_state["requires_confirmation"] = False


def render_sidebar(chat_flow: ChatFlow) -> str:
    st.sidebar.title("💰 Expense Assistant")
    st.sidebar.markdown("---")

    user_id = st.sidebar.text_input("User ID", value=st.session_state.get("user_id", ""))
    st.session_state["user_id"] = user_id

    status = chat_flow.status()
    st.sidebar.markdown(
        f"**Model:** {status['primary_model']}  \n"
        f"**Fallback:** {status['fallback_model']}"
    )

    context: ConversationContext = st.session_state["context"]
    if context.last_book:
        st.sidebar.markdown(f"**Current book:** {context.last_book.name}")
    if context.pending_expense:
        pending = context.pending_expense
        st.sidebar.markdown(
            f"**Waiting:** {pending.amount} for '{pending.category_name}' in {pending.book_name}"
        )

    st.sidebar.markdown("---")
    st.sidebar.markdown(
        """
        **Try:**
        - "Create a book called House in USD"
        - "Add electricity bill 40 for House"
        - "Show my expenses this month"
        """
    )

    if st.sidebar.button("🧹 New conversation"):
        st.session_state["history"] = []
        st.session_state["context"] = ConversationContext()
        st.session_state["requires_confirmation"] = False
        st.rerun()

    with st.sidebar.expander("⚙️ Connection Status"):
        settings_status = validate_all_settings()
        for name in ("gemini", "database", "exchange_rates", "app"):
            if settings_status.get(name, False):
                st.success(f"{name}: configured")
            else:
                st.error(f"{name}: {settings_status.get(f'{name}_error', 'Not configured')}")

    return user_id


def render_chat(chat_flow: ChatFlow, user_id: str) -> None:
    st.title("💬 Chat with your ledger")

    history: list[ChatMessage] = st.session_state["history"]
    for message in history:
        with st.chat_message("user" if message.role == ChatRole.USER else "assistant"):
            st.markdown(message.content)

    if st.session_state["requires_confirmation"]:
        st.markdown(
            '<div class="confirm-box">Reply <b>yes</b> to confirm, or ask for something else.</div>',
            unsafe_allow_html=True,
        )

    prompt = st.chat_input("e.g. Add electricity bill 40 for House")
    if not prompt:
        return
    if not user_id:
        st.warning("Enter your user ID in the sidebar first.")
        return

    with st.chat_message("user"):
        st.markdown(prompt)

    request = ChatRequest(
        user_id=user_id,
        message=prompt,
        conversation_history=list(history),
        context=st.session_state["context"],
    )

    with st.spinner("Working on it..."):
        try:
            response = run_async(chat_flow.handle(request))
        except Exception as e:
            st.error(f"Error: {str(e)}")
            return

    with st.chat_message("assistant"):
        st.markdown(response.response)

    history.append(ChatMessage(role=ChatRole.USER, content=prompt))
    history.append(ChatMessage(role=ChatRole.ASSISTANT, content=response.response))
    st.session_state["context"] = response.context
    st.session_state["requires_confirmation"] = response.requires_confirmation
    st.rerun()


def main():
    """Main application entry point."""
    init_session()
    chat_flow, _ = get_components()
    user_id = render_sidebar(chat_flow)
    render_chat(chat_flow, user_id)


if __name__ == "__main__":
    main()
