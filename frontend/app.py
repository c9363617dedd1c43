"""Lectern - Streamlit Chat Interface.

Thin UI over the chat client library. All chat logic lives in
frontend/chat; this file handles:
  - Building the client, state, session, store and runtime once per browser session
  - Restoring the active conversation on page load
  - Live rendering of the streamed reply
  - Usage bar, agent picker and conversation history in the sidebar
"""

import streamlit as st

from backend.api.events import Source
from backend.core.ledger import format_cost
from frontend.chat.api_client import ChatApiClient, ChatApiError
from frontend.chat.models import TurnOutcome, parse_document_ids
from frontend.chat.runtime import AppendMessage, ChatRuntime, ThreadMessage
from frontend.chat.session import ChatSession, ChatState
from frontend.chat.session_store import SessionStore

# Page setup
st.set_page_config(
    page_title="Lectern - Library Chat",
    layout="centered",
)

# Custom styles
st.markdown("""
<style>
    .stApp {
        max-width: 900px;
        margin: 0 auto;
    }
    .stChatMessage {
        padding: 0.75rem 1rem;
    }
    .status-badge {
        display: inline-block;
        padding: 2px 8px;
        border-radius: 12px;
        font-size: 0.75rem;
        font-weight: 600;
    }
    .status-ok { background: #d4edda; color: #155724; }
    .status-err { background: #f8d7da; color: #721c24; }
</style>
""", unsafe_allow_html=True)


def init_session():
    """Initialize session state on first load."""
    if "runtime" in st.session_state:
        return

    api = ChatApiClient()
    state = ChatState()
    st.session_state.api = api
    st.session_state.store = SessionStore(api, state)
    st.session_state.runtime = ChatRuntime(ChatSession(api, state))

    store = st.session_state.store
    store.load_agents()
    store.load_active_session()
    store.load_usage()


def render_sources(sources: list[dict], key_prefix: str):
    """List cited chunks; content is fetched when the user asks for it."""
    store: SessionStore = st.session_state.store
    with st.expander(f"Sources ({len(sources)})"):
        for j, raw in enumerate(sources):
            source = Source.model_validate(raw)
            kind = "Book" if source.type == "book" else "Article"
            st.markdown(f"**{source.title}** · {kind}, part {source.chunk_index + 1}")
            if source.content:
                st.caption(source.excerpt or source.content[:200])
            elif st.button("Show passage", key=f"{key_prefix}-src-{j}"):
                hydrated = store.load_source_content(source)
                st.caption(hydrated.content or "Passage unavailable.")


def render_message(msg: ThreadMessage):
    with st.chat_message(msg.role):
        st.markdown(msg.content[0]["text"] if msg.content else "")
        sources = msg.metadata.get("custom", {}).get("sources")
        if sources:
            render_sources(sources, msg.id)


def render_usage():
    usage = st.session_state.runtime.state.usage
    if usage is None:
        st.caption("Usage unavailable.")
        return
    st.progress(min(usage.percentage, 100.0) / 100, text=f"{usage.used} / {usage.limit} tokens today")
    st.caption(f"Resets at {usage.reset_at}")
    if usage.cost_usd is not None:
        st.caption(f"Last reply: {usage.tokens_used} tokens, {format_cost(usage.cost_usd)}")


def send_message(user_input: str):
    """Submit through the runtime and render the reply while it streams."""
    runtime: ChatRuntime = st.session_state.runtime

    with st.chat_message("user"):
        st.markdown(user_input)

    with st.chat_message("assistant"):
        placeholder = st.empty()

        def on_update(state: ChatState):
            turn = state.current_turn
            if turn is not None:
                placeholder.markdown(turn.content + " ▌" if turn.content else "_Searching the library..._")

        outcome = runtime.on_new(AppendMessage(content=[{"type": "text", "text": user_input}]), on_update=on_update)
        placeholder.empty()

    if outcome == TurnOutcome.REJECTED:
        st.warning("[WARN] A reply is still being written. Please wait.")
        return
    st.rerun()


def render_history():
    store: SessionStore = st.session_state.store
    state = st.session_state.runtime.state

    for summary in store.load_history():
        label = summary.title or "Untitled conversation"
        if summary.conversation_id == state.conversation_id:
            label = f"▸ {label}"
        cols = st.columns([6, 1])
        if cols[0].button(label, key=f"open-{summary.conversation_id}", use_container_width=True):
            store.load_session(summary.conversation_id)
            st.rerun()
        if cols[1].button("✕", key=f"del-{summary.conversation_id}"):
            if not store.delete_session(summary.conversation_id):
                st.error("[ERROR] Could not delete the conversation.")
            st.rerun()

    if state.conversation_id:
        new_title = st.text_input("Rename current conversation", key="rename-title")
        if st.button("Rename", use_container_width=True) and new_title:
            if not store.rename_session(state.conversation_id, new_title):
                st.error("[ERROR] Could not rename the conversation.")
            st.rerun()


def main():
    """Run the Streamlit chat application."""
    init_session()
    runtime: ChatRuntime = st.session_state.runtime
    store: SessionStore = st.session_state.store
    state = runtime.state

    api_status = "unknown"
    try:
        api_status = st.session_state.api.health().get("status", "unknown")
    except ChatApiError:
        api_status = "offline"

    # Header
    st.title("Lectern")
    st.caption("Ask questions about the library's articles and books")

    if api_status == "offline":
        st.warning("[WARN] The chat service is currently offline. Please try again shortly.")

    # Sidebar
    with st.sidebar:
        if api_status == "healthy":
            st.markdown('<span class="status-badge status-ok">* API Healthy</span>', unsafe_allow_html=True)
        elif api_status == "degraded":
            st.markdown('<span class="status-badge status-err">* API Degraded</span>', unsafe_allow_html=True)
        else:
            st.markdown('<span class="status-badge status-err">* API Offline</span>', unsafe_allow_html=True)

        st.markdown("### Daily usage")
        render_usage()

        if state.agents:
            slugs = [a["slug"] for a in state.agents]
            names = {a["slug"]: a["name"] for a in state.agents}
            index = slugs.index(state.selected_agent) if state.selected_agent in slugs else 0
            state.selected_agent = st.selectbox(
                "Assistant", slugs, index=index, format_func=lambda s: names.get(s, s)
            )

        raw_ids = st.text_input(
            "Limit to documents",
            value=", ".join(state.selected_documents),
            placeholder="document ids, comma separated",
            disabled=runtime.is_running,
        )
        state.selected_documents = parse_document_ids(raw_ids)

        st.divider()
        if st.button("[NEW] New conversation", use_container_width=True, disabled=runtime.is_running):
            store.start_new_conversation()
            st.rerun()

        st.markdown("### Conversations")
        render_history()

    if state.limit_error:
        st.warning(f"[LIMIT] {state.limit_error}")
    elif state.error:
        st.error(f"[ERROR] {state.error}")

    # Render existing messages
    for msg in runtime.messages:
        render_message(msg)

    # Chat input
    if user_input := st.chat_input("Ask about the library...", disabled=runtime.is_running):
        send_message(user_input)


if __name__ == "__main__":
    main()
