from datetime import datetime, timedelta

import pytest

from educafric import create_app
from educafric.auth import issue_token
from educafric.extensions import db as _db
from educafric.models import (ROLE_DIRECTOR, ROLE_PARENT, ROLE_SITE_ADMIN, ROLE_STUDENT, ROLE_TEACHER, Classroom,
                              ParentStudentLink, School, Subject, User)
from educafric.mtn import mtn_client


@pytest.fixture
def app():
    app = create_app('testing')
    with app.app_context():
        _db.create_all()
        app.extensions['verification_limiter'].reset()
        mtn_client._token = None
        mtn_client._token_expires_at = 0.0
        yield app
        _db.session.remove()
        _db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def db(app):
    return _db


@pytest.fixture
def make_school(db):
    def _make_school(name='Lycée Bilingue de Yaoundé', plan='12months', **kwargs):
        if plan == 'trial':
            kwargs.setdefault('subscription_status', 'trial')
            kwargs.setdefault('subscription_type', 'trial')
        else:
            kwargs.setdefault('subscription_status', 'active')
            kwargs.setdefault('subscription_type', plan)
            if plan != 'absolute':
                kwargs.setdefault('subscription_end_date', datetime.utcnow() + timedelta(days=365))
        school = School(name=name, **kwargs)
        db.session.add(school)
        db.session.commit()
        return school
    return _make_school


@pytest.fixture
def make_user(db):
    counter = {'n': 0}

    def _make_user(role, school=None, password='motdepasse1', **kwargs):
        counter['n'] += 1
        n = counter['n']
        kwargs.setdefault('username', f'{role.lower()}{n}')
        kwargs.setdefault('email', f'{role.lower()}{n}@lycee-yaounde.cm')
        kwargs.setdefault('phone', f'+2376700000{n:02d}')
        kwargs.setdefault('first_name', role)
        kwargs.setdefault('last_name', f'No{n}')
        user = User(role=role, school_id=school.id if school else None, **kwargs)
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        return user
    return _make_user


@pytest.fixture
def school(make_school):
    return make_school()


@pytest.fixture
def classroom(db, school):
    classroom = Classroom(school_id=school.id, name='6ème A', academic_year='2024-2025')
    db.session.add(classroom)
    db.session.commit()
    return classroom


@pytest.fixture
def subjects(db, school):
    result = {
        'MATH': Subject(school_id=school.id, name='Mathématiques', code='MATH', coefficient=4),
        'FR': Subject(school_id=school.id, name='Français', code='FR', coefficient=2),
    }
    db.session.add_all(result.values())
    db.session.commit()
    return result


@pytest.fixture
def director(make_user, school):
    return make_user(ROLE_DIRECTOR, school)


@pytest.fixture
def teacher(make_user, school):
    return make_user(ROLE_TEACHER, school)


@pytest.fixture
def site_admin(make_user):
    return make_user(ROLE_SITE_ADMIN, None, username='siteadmin', email='admin@educafric.com')


@pytest.fixture
def make_student(make_user, school, classroom):
    def _make_student(**kwargs):
        kwargs.setdefault('class_id', classroom.id)
        return make_user(ROLE_STUDENT, kwargs.pop('school', school), **kwargs)
    return _make_student


@pytest.fixture
def make_parent(db, make_user, school):
    def _make_parent(*children, **kwargs):
        parent = make_user(ROLE_PARENT, kwargs.pop('school', school), **kwargs)
        for child in children:
            db.session.add(ParentStudentLink(parent_id=parent.id, student_id=child.id))
        db.session.commit()
        return parent
    return _make_parent


@pytest.fixture
def auth_headers(app):
    def _auth_headers(user):
        return {'Authorization': f'Bearer {issue_token(user)}'}
    return _auth_headers
