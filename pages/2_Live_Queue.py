import streamlit as st
from goforno.db import SessionLocal
from goforno.errors import EngineError
from goforno.models import LiveSession, QuestTemplate
from goforno.services import ledger
from goforno.services.suggestions import list_pending, respond, suggest
from goforno.ui.theme import load_css

load_css()

if "user" not in st.session_state:
    st.warning("Please log in first.")
    st.stop()

st.title("Live Suggestion Queue 📡")

db = SessionLocal()
try:
    user_id = st.session_state.user["id"]
    my_stream = db.query(LiveSession).filter(
        LiveSession.user_id == user_id, LiveSession.is_active.is_(True)
    ).first()

    # ------------------------------------------------------------
    # Streamer view: ordered queue with accept / decline
    # ------------------------------------------------------------
    if my_stream:
        st.subheader(f"Your stream • 👀 {my_stream.viewer_count} watching")
        pending = list_pending(db, my_stream.id, user_id)
        if not pending:
            st.caption("No pending suggestions yet.")
        for idx, s in enumerate(pending, start=1):
            cols = st.columns([6, 1, 1])
            with cols[0]:
                boost = f"💎 {s.boost_amount}" if s.boost_amount else "no boost"
                st.markdown(f"**{idx}. {s.quest.title}** ({s.quest.difficulty}, {boost})")
                if s.message:
                    st.caption(s.message)
            with cols[1]:
                if st.button("Accept", key=f"btn_accept_{s.id}"):
                    try:
                        result = respond(db, my_stream.id, s.id, user_id, "accept")
                        st.success(result["message"])
                    except EngineError as e:
                        st.error(str(e))
            with cols[2]:
                if st.button("Decline", key=f"btn_decline_{s.id}"):
                    try:
                        respond(db, my_stream.id, s.id, user_id, "decline")
                        st.rerun()
                    except EngineError as e:
                        st.error(str(e))
    else:
        if st.button("Go live 🔴", key="btn_go_live"):
            db.add(LiveSession(user_id=user_id, is_active=True, viewer_count=0))
            db.commit()
            st.rerun()

    st.divider()

    # ------------------------------------------------------------
    # Viewer view: suggest a quest to someone else's stream
    # ------------------------------------------------------------
    st.subheader("Suggest a quest")
    st.caption(f"Your balance: 💎 {ledger.balance(user_id, db)}")
    streams = db.query(LiveSession).filter(
        LiveSession.is_active.is_(True), LiveSession.user_id != user_id
    ).all()
    quests = db.query(QuestTemplate).order_by(QuestTemplate.id.desc()).limit(50).all()
    if not streams or not quests:
        st.caption("No live streams or quests available.")
    else:
        with st.form("suggest_form"):
            stream = st.selectbox("Stream", streams, format_func=lambda ls: f"#{ls.id} • {ls.title or 'Live'}")
            quest = st.selectbox("Quest", quests, format_func=lambda q: f"{q.title} ({q.difficulty})")
            boost = st.number_input("Boost (diamonds)", min_value=0, step=5, value=0)
            message = st.text_input("Message (optional)")
            if st.form_submit_button("Send suggestion"):
                try:
                    result = suggest(db, stream.id, user_id, quest.id, int(boost), message or None)
                    st.success(f"Suggestion sent! New balance: 💎 {result['new_balance']}")
                except EngineError as e:
                    st.error(str(e))
finally:
    db.close()
