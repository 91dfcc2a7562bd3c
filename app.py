import streamlit as st
from goforno.db import init_db, SessionLocal
from goforno.models import User
from goforno.services.stats import get_or_create_stats
from goforno.ui.theme import load_css

st.set_page_config(page_title="Go for No", page_icon="🎯", layout="wide")

# Init DB on first load
if "db_init" not in st.session_state:
    init_db()
    st.session_state.db_init = True

load_css()

if "user" not in st.session_state:
    st.markdown("<div style='text-align: center; margin-top: 50px;'>", unsafe_allow_html=True)
    st.title("Go for No 🎯")
    st.subheader("Quest & Challenge Engine Console")

    with st.form("login_form"):
        email = st.text_input("Email")
        handle = st.text_input("Handle / Name")
        submitted = st.form_submit_button("Open Console")

        if submitted and email and handle:
            db = SessionLocal()
            try:
                user = db.query(User).filter(User.email == email).first()
                if not user:
                    user = User(email=email, handle=handle, notification_preferences={})
                    db.add(user)
                    db.commit()
                    db.refresh(user)
                    get_or_create_stats(user.id, db)
                    db.commit()
                st.session_state.user = {"id": user.id, "handle": user.handle}
            finally:
                db.close()
            st.rerun()
    st.markdown("</div>", unsafe_allow_html=True)

else:
    st.markdown(f"### Welcome back, {st.session_state.user['handle']}! 👋")
    st.write("Use the sidebar for scheduler health, your live suggestion queue, or quest progress.")
    st.info("👈 Open the sidebar to get started!")
