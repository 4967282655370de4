"""
UI layer
Purpose: Streamlit-only glue. Renders the chat window, sidebar settings and
session list, and delegates all work to the controller. Keeps UI concerns
separate from the core so the core can be unit tested without Streamlit.

Run: streamlit run app/app.py
"""

import atexit

import streamlit as st

from chatcore.config import ChatConfig
from chatcore.controller import ChatController
from chatcore.errors import ChatError, CredentialStoreError, describe_error
from chatcore.logging_config import setup_logging
from chatcore.models import ChatModel, ControllerEvent, Role
from chatcore.persistence.session_store import SessionStore
from chatcore.services.credentials import (
    EnvCredentialGateway,
    FileCredentialGateway,
    InMemoryCredentialGateway,
    is_valid_api_key_format,
    save_validated_key,
)
from chatcore.services.llm_openai import OpenAICompletionClient


# ---------------------------
# Page config
# ---------------------------
st.set_page_config(
    page_title="Menubar Chat",
    page_icon="💬",
    layout="centered",
    initial_sidebar_state="expanded",
)

# ---------------------------
# Process-wide resources
# ---------------------------
@st.cache_resource
def get_config() -> ChatConfig:
    config = ChatConfig.from_env()
    setup_logging(config.log_level)
    return config


@st.cache_resource
def get_store() -> SessionStore:
    """One history store per process; pending writes are flushed at exit."""
    store = SessionStore.from_config(get_config())
    atexit.register(store.close)
    return store


config = get_config()
store = get_store()
saved_keys = FileCredentialGateway(config.data_dir / "secrets.yaml")


def initial_key():
    """Environment wins over the saved key; an unreadable secrets file is ignored."""
    key = EnvCredentialGateway().get()
    if key:
        return key
    try:
        return saved_keys.get()
    except CredentialStoreError as e:
        st.warning(describe_error(e))
        return None


# ---------------------------
# Session state init
# ---------------------------
st_session = st.session_state
if "credentials" not in st_session:
    st_session.credentials = InMemoryCredentialGateway(initial_key())
st_session.setdefault("controller", None)
st_session.setdefault("rejected_key", None)
st_session.setdefault("model", config.model)

MODEL_CHOICES = [m.value for m in ChatModel]
if st_session.model not in MODEL_CHOICES:
    MODEL_CHOICES.append(st_session.model)


# ---------------------------
# Helpers
# ---------------------------
def model_label(value: str) -> str:
    try:
        return ChatModel(value).display_name
    except ValueError:
        return value


def get_controller():
    """Return the controller, building it on first use for this browser session."""
    controller = st_session.get("controller")
    if controller is None:
        llm = OpenAICompletionClient(
            st_session.credentials,
            base_url=config.base_url,
            timeout=config.request_timeout,
            key_test_timeout=config.key_test_timeout,
        )
        controller = ChatController.from_config(config, store, llm)
        st_session.controller = controller
    controller.set_model(st_session.model)
    return controller


def check_and_store_key(candidate: str, remember: bool) -> None:
    """Advisory format check, live key test, then keep the key (optionally on disk)."""
    if not is_valid_api_key_format(candidate):
        st.warning("This does not look like an OpenAI key (expected 'sk-...').")
    try:
        with st.spinner("Checking key…"):
            ok = get_controller().test_credential(candidate)
    except ChatError as e:
        st.error(describe_error(e))
        return
    if not ok:
        st_session.rejected_key = candidate
        st.error("Invalid API key. Please check your OpenAI API key.")
        return
    st_session.credentials.set(candidate)
    st_session.rejected_key = None
    if not remember:
        st.toast("API key saved for this session.", icon="✅")
        return
    try:
        save_validated_key(saved_keys, candidate)
    except ChatError as e:
        st.error(describe_error(e))
        return
    st.toast("API key saved on this computer.", icon="✅")


# ---------------------------
# SIDEBAR: settings & sessions
# ---------------------------
with st.sidebar:
    st.markdown("# Settings")

    st.markdown("## OpenAI API key")
    typed_key = st.text_input(
        "Enter your API key",
        type="password",
        help="Kept in memory unless 'Remember' is ticked.",
    ).strip()
    remember = st.checkbox("Remember on this computer", value=False)
    if typed_key == st_session.rejected_key:
        st.error("Invalid API key. Please check your OpenAI API key.")
    elif typed_key and typed_key != st_session.credentials.get():
        check_and_store_key(typed_key, remember)
    if saved_keys.has() and st.button("Forget saved key"):
        try:
            saved_keys.delete()
        except CredentialStoreError as e:
            st.error(describe_error(e))
        else:
            st_session.credentials.delete()
            st.rerun()
    if not st_session.credentials.has():
        st.warning("Please enter your API key in the sidebar to continue.")
        st.markdown("[Get an API key from OpenAI](https://platform.openai.com/api-keys)")
        st.stop()

    st_session.model = st.selectbox(
        "Model",
        MODEL_CHOICES,
        index=MODEL_CHOICES.index(st_session.model),
        format_func=model_label,
    )
    try:
        st.caption(ChatModel(st_session.model).description)
    except ValueError:
        pass
    st.divider()

    st.markdown("## Conversations")
    sessions = store.list_sessions()
    if not sessions:
        st.caption("No conversations yet.")
    for session in sessions:
        active = session.id == store.active_session_id
        label = ("▸ " if active else "") + (session.title or "Untitled")
        if st.button(label, key=f"session_{session.id}", use_container_width=True):
            store.select_session(session.id)
            st.rerun()


# ---------------------------
# MAIN: transcript & composer
# ---------------------------
controller = get_controller()
history = controller.messages

header_left, header_right = st.columns([3, 1])
with header_left:
    st.markdown(f"**{len(history)} messages** · {model_label(st_session.model)}")
with header_right:
    if history and st.button("Clear Chat", type="secondary"):
        controller.clear()
        st.rerun()

if not history:
    st.markdown("### Ready to Chat!")
    st.caption("Ask me anything to get started.")
    st.markdown(
        "Try asking:\n"
        '- "Explain quantum computing"\n'
        '- "Write a Python function"\n'
        '- "Help me plan my day"'
    )

for msg in history:
    with st.chat_message(msg.role.value):
        if msg.role == Role.ASSISTANT and not msg.content:
            st.caption("(no response)")
        else:
            st.markdown(msg.content)
        st.caption(f"{msg.role.display_name} · {msg.created_at.astimezone():%H:%M}")

raw = st.chat_input("Ask me anything…", disabled=controller.is_sending)
if raw is not None and raw.strip():
    with st.chat_message(Role.USER.value):
        st.markdown(raw.strip())

    with st.chat_message(Role.ASSISTANT.value):
        placeholder = st.empty()
        placeholder.caption("Thinking…")
        streamed = []

        def render(event: ControllerEvent) -> None:
            if event.kind == "chunk":
                streamed.append(event.message)
                placeholder.markdown("".join(streamed) + "▌")

        unsubscribe = controller.subscribe(render)
        try:
            controller.send(raw)
        except ChatError as e:
            st.toast(describe_error(e), icon="⚠️")
        finally:
            unsubscribe()

    st.rerun()
