# Database Models
from datetime import datetime, timedelta

import bcrypt
from flask import current_app

from .extensions import db

ROLE_SITE_ADMIN = 'SiteAdmin'
ROLE_DIRECTOR = 'Director'
ROLE_TEACHER = 'Teacher'
ROLE_PARENT = 'Parent'
ROLE_STUDENT = 'Student'
ROLE_COMMERCIAL = 'Commercial'
ROLES = (ROLE_SITE_ADMIN, ROLE_DIRECTOR, ROLE_TEACHER, ROLE_PARENT, ROLE_STUDENT, ROLE_COMMERCIAL)

TERMS = ('T1', 'T2', 'T3')

BULLETIN_DRAFT = 'draft'
BULLETIN_SUBMITTED = 'submitted'
BULLETIN_APPROVED = 'approved'
BULLETIN_SIGNED = 'signed'
BULLETIN_SENT = 'sent'


class School(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False, default='School Name')
    address = db.Column(db.String(500), nullable=True)
    email = db.Column(db.String(120), nullable=True)
    phone = db.Column(db.String(50), nullable=True)
    is_active = db.Column(db.Boolean, default=True)
    is_blocked = db.Column(db.Boolean, default=False)
    is_sandbox = db.Column(db.Boolean, default=False)
    subscription_status = db.Column(db.String(20), default='trial')  # trial, active, expired, blocked
    subscription_type = db.Column(db.String(20), default='trial')  # trial, 90days, 12months, 24months, absolute
    trial_start_date = db.Column(db.DateTime, default=datetime.utcnow)
    subscription_end_date = db.Column(db.DateTime, nullable=True)
    last_notification_sent = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def days_remaining(self):
        """Calculate days remaining in subscription"""
        if self.subscription_type == 'absolute':
            return None
        if self.subscription_status == 'trial':
            trial_days = current_app.config.get('TRIAL_DAYS', 30)
            if not self.trial_start_date:
                # If no trial start date, assume trial just started
                self.trial_start_date = datetime.utcnow()
                return trial_days
            trial_end = self.trial_start_date + timedelta(days=trial_days)
            return max(0, (trial_end - datetime.utcnow()).days)
        if self.subscription_end_date:
            return max(0, (self.subscription_end_date - datetime.utcnow()).days)
        return 0

    def is_subscription_expired(self):
        """Check if subscription has expired"""
        if self.subscription_status == 'expired':
            return True
        days_left = self.days_remaining()
        return days_left is not None and days_left <= 0

    def needs_notification(self):
        """Check if school needs subscription reminder notification"""
        days_left = self.days_remaining()
        if days_left is None or not 0 < days_left <= 7:
            return False
        if not self.last_notification_sent:
            return True
        # Send notification once per day
        return self.last_notification_sent.date() != datetime.utcnow().date()

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'address': self.address,
            'email': self.email,
            'phone': self.phone,
            'is_active': self.is_active,
            'is_blocked': self.is_blocked,
            'is_sandbox': self.is_sandbox,
            'subscription_status': self.subscription_status,
            'subscription_type': self.subscription_type,
            'subscription_end_date': _iso(self.subscription_end_date),
            'days_remaining': self.days_remaining(),
        }


class Classroom(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey('school.id'), nullable=False)
    name = db.Column(db.String(100), nullable=False)
    level = db.Column(db.String(50), nullable=True)
    academic_year = db.Column(db.String(20), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    school = db.relationship('School', backref='classrooms')

    __table_args__ = (db.UniqueConstraint('school_id', 'name', name='unique_school_class_name'),)

    def to_dict(self):
        return {'id': self.id, 'name': self.name, 'level': self.level, 'academic_year': self.academic_year}


class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey('school.id'), nullable=True)
    username = db.Column(db.String(120), nullable=False, unique=True)
    email = db.Column(db.String(120), nullable=True, unique=True)
    phone = db.Column(db.String(30), nullable=True)
    password_hash = db.Column(db.String(128), nullable=False)
    role = db.Column(db.String(20), nullable=False, default=ROLE_DIRECTOR)
    first_name = db.Column(db.String(100), nullable=True)
    last_name = db.Column(db.String(100), nullable=True)
    gender = db.Column(db.String(10), nullable=True)
    matricule = db.Column(db.String(50), nullable=True)
    date_of_birth = db.Column(db.String(20), nullable=True)
    address = db.Column(db.String(300), nullable=True)
    class_id = db.Column(db.Integer, db.ForeignKey('classroom.id'), nullable=True)
    subjects = db.Column(db.JSON, default=list)
    extra = db.Column(db.JSON, default=dict)
    preferred_language = db.Column(db.String(2), default='fr')
    is_active = db.Column(db.Boolean, default=True)
    password_change_required = db.Column(db.Boolean, default=False)
    created_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    school = db.relationship('School', backref='users')
    classroom = db.relationship('Classroom', backref='students')

    @property
    def full_name(self):
        name = ' '.join(part for part in (self.first_name, self.last_name) if part)
        return name or self.username

    def set_password(self, password):
        rounds = current_app.config.get('BCRYPT_ROUNDS', 12)
        self.password_hash = bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt(rounds)).decode('utf-8')

    def check_password(self, password):
        if not password or not self.password_hash:
            return False
        return bcrypt.checkpw(password.encode('utf-8'), self.password_hash.encode('utf-8'))

    def to_dict(self):
        return {
            'id': self.id,
            'school_id': self.school_id,
            'username': self.username,
            'email': self.email,
            'phone': self.phone,
            'role': self.role,
            'first_name': self.first_name,
            'last_name': self.last_name,
            'name': self.full_name,
            'matricule': self.matricule,
            'class_id': self.class_id,
            'class_name': self.classroom.name if self.classroom else None,
            'subjects': self.subjects or [],
            'preferred_language': self.preferred_language,
            'password_change_required': self.password_change_required,
        }


class ParentStudentLink(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    parent_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    relation = db.Column(db.String(50), default='parent')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    parent = db.relationship('User', foreign_keys=[parent_id])
    student = db.relationship('User', foreign_keys=[student_id])

    __table_args__ = (db.UniqueConstraint('parent_id', 'student_id', name='unique_parent_student'),)


def parents_of(student_id):
    links = ParentStudentLink.query.filter_by(student_id=student_id).all()
    return [link.parent for link in links if link.parent and link.parent.is_active]


def children_of(parent_id):
    links = ParentStudentLink.query.filter_by(parent_id=parent_id).all()
    return [link.student for link in links if link.student]


class Subject(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey('school.id'), nullable=False)
    name = db.Column(db.String(100), nullable=False)
    code = db.Column(db.String(20), nullable=False)
    coefficient = db.Column(db.Float, default=1.0)

    __table_args__ = (db.UniqueConstraint('school_id', 'code', name='unique_school_subject_code'),)

    def to_dict(self):
        return {'id': self.id, 'name': self.name, 'code': self.code, 'coefficient': self.coefficient}


class Grade(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey('school.id'), nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    subject_id = db.Column(db.Integer, db.ForeignKey('subject.id'), nullable=False)
    class_id = db.Column(db.Integer, db.ForeignKey('classroom.id'), nullable=False)
    term = db.Column(db.String(2), nullable=False)
    academic_year = db.Column(db.String(20), nullable=False)
    cc = db.Column(db.Float, nullable=True)  # Contrôle continu
    exam = db.Column(db.Float, nullable=True)  # Composition
    teacher_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    subject = db.relationship('Subject')

    __table_args__ = (
        db.UniqueConstraint('student_id', 'subject_id', 'term', 'academic_year', name='unique_student_subject_term'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'student_id': self.student_id,
            'subject_id': self.subject_id,
            'subject_code': self.subject.code if self.subject else None,
            'subject_name': self.subject.name if self.subject else None,
            'class_id': self.class_id,
            'term': self.term,
            'academic_year': self.academic_year,
            'cc': self.cc,
            'exam': self.exam,
            'teacher_id': self.teacher_id,
        }


class Bulletin(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey('school.id'), nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    class_id = db.Column(db.Integer, db.ForeignKey('classroom.id'), nullable=False)
    term = db.Column(db.String(2), nullable=False)
    academic_year = db.Column(db.String(20), nullable=False)
    status = db.Column(db.String(20), default=BULLETIN_DRAFT)
    term_average = db.Column(db.Float, nullable=True)
    class_rank = db.Column(db.Integer, nullable=True)
    class_size = db.Column(db.Integer, nullable=True)
    appreciation = db.Column(db.String(50), nullable=True)
    subject_details = db.Column(db.JSON, default=dict)
    document_hash = db.Column(db.String(64), nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)
    submitted_at = db.Column(db.DateTime, nullable=True)
    approved_at = db.Column(db.DateTime, nullable=True)
    signed_at = db.Column(db.DateTime, nullable=True)
    sent_at = db.Column(db.DateTime, nullable=True)
    sent_to_parents = db.Column(db.Boolean, default=False)
    sent_to_students = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    student = db.relationship('User', foreign_keys=[student_id])
    classroom = db.relationship('Classroom')
    school = db.relationship('School')

    __table_args__ = (
        db.UniqueConstraint('student_id', 'class_id', 'term', 'academic_year', name='unique_student_bulletin'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'school_id': self.school_id,
            'student_id': self.student_id,
            'student_name': self.student.full_name if self.student else None,
            'matricule': self.student.matricule if self.student else None,
            'class_id': self.class_id,
            'class_name': self.classroom.name if self.classroom else None,
            'term': self.term,
            'academic_year': self.academic_year,
            'status': self.status,
            'term_average': self.term_average,
            'class_rank': self.class_rank,
            'class_size': self.class_size,
            'appreciation': self.appreciation,
            'subject_details': self.subject_details or {},
            'rejection_reason': self.rejection_reason,
            'signed_at': _iso(self.signed_at),
            'sent_to_parents': self.sent_to_parents,
            'sent_to_students': self.sent_to_students,
        }


class Signature(db.Model):
    """Drawn signature image of a school official"""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    user_role = db.Column(db.String(30), nullable=False, default='director')
    signature_data = db.Column(db.Text, nullable=False)  # data URL of the drawn image
    signature_type = db.Column(db.String(20), default='drawn')
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = db.relationship('User')


class DigitalSignature(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    document_type = db.Column(db.String(30), nullable=False, default='bulletin')
    document_id = db.Column(db.Integer, nullable=False)
    school_id = db.Column(db.Integer, db.ForeignKey('school.id'), nullable=False)
    signatory_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    signatory_name = db.Column(db.String(200), nullable=False)
    signatory_title = db.Column(db.String(100), nullable=False)
    signatory_role = db.Column(db.String(30), nullable=False)
    signature_hash = db.Column(db.String(64), nullable=False)
    document_hash = db.Column(db.String(64), nullable=False)
    verification_code = db.Column(db.String(32), nullable=False, unique=True)
    signature_device = db.Column(db.String(200), nullable=True)
    signature_ip = db.Column(db.String(64), nullable=True)
    is_valid = db.Column(db.Boolean, default=True)
    signed_at = db.Column(db.DateTime, default=datetime.utcnow)


class BulletinVerification(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    bulletin_id = db.Column(db.Integer, db.ForeignKey('bulletin.id'), nullable=False, unique=True)
    school_id = db.Column(db.Integer, db.ForeignKey('school.id'), nullable=False)
    verification_code = db.Column(db.String(32), nullable=False, unique=True)
    short_code = db.Column(db.String(8), nullable=False, unique=True)
    student_name = db.Column(db.String(200))
    student_matricule = db.Column(db.String(50))
    class_name = db.Column(db.String(100))
    school_name = db.Column(db.String(200))
    term = db.Column(db.String(2))
    academic_year = db.Column(db.String(20))
    general_average = db.Column(db.Float)
    class_rank = db.Column(db.Integer)
    total_students = db.Column(db.Integer)
    is_active = db.Column(db.Boolean, default=True)
    issued_at = db.Column(db.DateTime, default=datetime.utcnow)
    approved_at = db.Column(db.DateTime, nullable=True)
    expires_at = db.Column(db.DateTime, nullable=True)
    verification_count = db.Column(db.Integer, default=0)
    last_verified_at = db.Column(db.DateTime, nullable=True)
    last_verified_ip = db.Column(db.String(64), nullable=True)


class BulletinVerificationLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    verification_id = db.Column(db.Integer, db.ForeignKey('bulletin_verification.id'), nullable=True)
    school_id = db.Column(db.Integer, nullable=True)
    access_result = db.Column(db.String(20), nullable=False)  # success, invalid_code, expired, access_denied
    verification_method = db.Column(db.String(20), nullable=False)  # qr_code, manual_entry
    ip_address = db.Column(db.String(64))
    user_agent = db.Column(db.String(300))
    referrer = db.Column(db.String(300))
    language = db.Column(db.String(2))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class BulletinVerificationSettings(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey('school.id'), nullable=False, unique=True)
    enable_public_verification = db.Column(db.Boolean, default=True)
    show_student_photo = db.Column(db.Boolean, default=True)
    show_school_logo = db.Column(db.Boolean, default=True)
    show_detailed_grades = db.Column(db.Boolean, default=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'enablePublicVerification': self.enable_public_verification,
            'showStudentPhoto': self.show_student_photo,
            'showSchoolLogo': self.show_school_logo,
            'showDetailedGrades': self.show_detailed_grades,
        }


class Subscription(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey('school.id'), nullable=False)
    subscription_type = db.Column(db.String(20), nullable=False)  # trial, 90days, 12months, 24months, absolute
    start_date = db.Column(db.DateTime, nullable=False)
    end_date = db.Column(db.DateTime, nullable=True)
    amount_paid = db.Column(db.Float, default=0.0)
    payment_reference = db.Column(db.String(100), nullable=True)
    is_active = db.Column(db.Boolean, default=True)
    created_by = db.Column(db.String(120), nullable=False)
    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def days_remaining(self):
        """Calculate days remaining in this subscription period"""
        if self.subscription_type == 'absolute':
            return None  # Unlimited
        if self.end_date:
            return max(0, (self.end_date - datetime.utcnow()).days)
        return 0

    def to_dict(self):
        return {
            'id': self.id,
            'subscription_type': self.subscription_type,
            'start_date': _iso(self.start_date),
            'end_date': _iso(self.end_date),
            'amount_paid': self.amount_paid,
            'payment_reference': self.payment_reference,
            'days_remaining': self.days_remaining(),
            'created_by': self.created_by,
            'notes': self.notes,
        }


class NotificationLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey('school.id'), nullable=False)
    notification_type = db.Column(db.String(50), nullable=False)  # subscription_reminder, subscription_expired, etc.
    message = db.Column(db.Text, nullable=False)
    sent_at = db.Column(db.DateTime, default=datetime.utcnow)
    days_remaining = db.Column(db.Integer, nullable=True)

    def to_dict(self):
        return {
            'notification_type': self.notification_type,
            'message': self.message,
            'sent_at': _iso(self.sent_at),
            'days_remaining': self.days_remaining,
        }


class FeeStructure(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey('school.id'), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    fee_type = db.Column(db.String(30), nullable=False, default='tuition')  # tuition, registration, transport, canteen, exam
    amount = db.Column(db.Float, nullable=False)
    class_id = db.Column(db.Integer, db.ForeignKey('classroom.id'), nullable=True)
    academic_year = db.Column(db.String(20), nullable=True)
    max_installments = db.Column(db.Integer, default=3)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'fee_type': self.fee_type,
            'amount': self.amount,
            'class_id': self.class_id,
            'academic_year': self.academic_year,
            'max_installments': self.max_installments,
        }


class FeeAssignment(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey('school.id'), nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    structure_id = db.Column(db.Integer, db.ForeignKey('fee_structure.id'), nullable=False)
    amount_due = db.Column(db.Float, nullable=False)
    amount_paid = db.Column(db.Float, default=0.0)
    installments = db.Column(db.Integer, default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    student = db.relationship('User')
    structure = db.relationship('FeeStructure', backref='assignments')

    __table_args__ = (db.UniqueConstraint('student_id', 'structure_id', name='unique_student_fee'),)

    def balance(self):
        return max(0, (self.amount_due or 0) - (self.amount_paid or 0))

    def is_paid_in_full(self):
        return self.balance() == 0

    def can_pay_installment(self):
        return self.installments < (self.structure.max_installments if self.structure else 1)

    def to_dict(self):
        return {
            'id': self.id,
            'student_id': self.student_id,
            'student_name': self.student.full_name if self.student else None,
            'structure_id': self.structure_id,
            'fee_name': self.structure.name if self.structure else None,
            'amount_due': self.amount_due,
            'amount_paid': self.amount_paid,
            'balance': self.balance(),
            'installments': self.installments,
            'status': 'paid' if self.is_paid_in_full() else ('partial' if self.amount_paid else 'unpaid'),
        }


class FeePayment(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey('school.id'), nullable=False)
    assignment_id = db.Column(db.Integer, db.ForeignKey('fee_assignment.id'), nullable=False)
    amount = db.Column(db.Float, nullable=False)
    method = db.Column(db.String(30), nullable=False, default='cash')  # cash, mtn_momo, orange_money, bank, stripe
    reference = db.Column(db.String(100), nullable=True)
    receipt_no = db.Column(db.String(20), nullable=False)
    installment_number = db.Column(db.Integer, default=1)
    balance_after = db.Column(db.Float, nullable=False)
    recorded_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    payment_date = db.Column(db.DateTime, default=datetime.utcnow)

    assignment = db.relationship('FeeAssignment', backref='payments')

    @staticmethod
    def generate_receipt_number(school_id):
        """Generate next receipt number in payment order (0001 for first payment, etc.) - school-specific"""
        last_payment = FeePayment.query.filter_by(school_id=school_id).order_by(FeePayment.id.desc()).first()
        if last_payment and last_payment.receipt_no.isdigit():
            next_number = int(last_payment.receipt_no) + 1
        else:
            next_number = 1
        return f"{next_number:04d}"

    def to_dict(self):
        assignment = self.assignment
        return {
            'id': self.id,
            'receipt_no': self.receipt_no,
            'assignment_id': self.assignment_id,
            'student_id': assignment.student_id if assignment else None,
            'student_name': assignment.student.full_name if assignment and assignment.student else None,
            'fee_name': assignment.structure.name if assignment and assignment.structure else None,
            'amount': self.amount,
            'method': self.method,
            'reference': self.reference,
            'installment_number': self.installment_number,
            'balance_after': self.balance_after,
            'payment_date': _iso(self.payment_date),
        }


class PaymentTransaction(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(20), nullable=False)  # stripe, mtn
    reference = db.Column(db.String(120), nullable=False, unique=True)
    purpose = db.Column(db.String(50), nullable=False, default='online_classes')
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    amount = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), default='XAF')
    status = db.Column(db.String(20), default='pending')  # pending, successful, failed
    details = db.Column(db.JSON, default=dict)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class OnlineClassActivation(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    teacher_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    payment_reference = db.Column(db.String(120), nullable=False, unique=True)
    payment_method = db.Column(db.String(20), nullable=False)
    duration_type = db.Column(db.String(20), nullable=False)
    amount = db.Column(db.Integer, nullable=False)
    start_date = db.Column(db.DateTime, nullable=False)
    end_date = db.Column(db.DateTime, nullable=False)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'startDate': _iso(self.start_date),
            'endDate': _iso(self.end_date),
            'durationType': self.duration_type,
            'paymentMethod': self.payment_method,
            'paymentReference': self.payment_reference,
            'amount': self.amount,
        }


class Bus(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey('school.id'), nullable=False)
    plate_number = db.Column(db.String(30), nullable=False)
    driver_name = db.Column(db.String(200), nullable=True)
    driver_phone = db.Column(db.String(30), nullable=True)
    capacity = db.Column(db.Integer, default=30)
    current_latitude = db.Column(db.Float, nullable=True)
    current_longitude = db.Column(db.Float, nullable=True)
    last_update = db.Column(db.DateTime, nullable=True)
    is_active = db.Column(db.Boolean, default=True)

    def to_dict(self):
        return {
            'id': self.id,
            'plate_number': self.plate_number,
            'driver_name': self.driver_name,
            'driver_phone': self.driver_phone,
            'capacity': self.capacity,
            'position': {
                'latitude': self.current_latitude,
                'longitude': self.current_longitude,
                'last_update': _iso(self.last_update),
            } if self.current_latitude is not None else None,
        }


class BusRoute(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey('school.id'), nullable=False)
    bus_id = db.Column(db.Integer, db.ForeignKey('bus.id'), nullable=True)
    name = db.Column(db.String(200), nullable=False)
    is_active = db.Column(db.Boolean, default=True)

    bus = db.relationship('Bus', backref='routes')
    stops = db.relationship('RouteStop', backref='route', order_by='RouteStop.sequence',
                            cascade='all, delete-orphan')

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'bus': self.bus.to_dict() if self.bus else None,
            'stops': [stop.to_dict() for stop in self.stops],
        }


class RouteStop(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    route_id = db.Column(db.Integer, db.ForeignKey('bus_route.id'), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    latitude = db.Column(db.Float, nullable=False)
    longitude = db.Column(db.Float, nullable=False)
    sequence = db.Column(db.Integer, nullable=False)
    scheduled_time = db.Column(db.String(5), nullable=True)  # HH:MM
    last_arrival_notified = db.Column(db.Date, nullable=True)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'latitude': self.latitude,
            'longitude': self.longitude,
            'sequence': self.sequence,
            'scheduled_time': self.scheduled_time,
        }


class BusEnrollment(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey('school.id'), nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    route_id = db.Column(db.Integer, db.ForeignKey('bus_route.id'), nullable=False)
    stop_id = db.Column(db.Integer, db.ForeignKey('route_stop.id'), nullable=False)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    student = db.relationship('User')
    route = db.relationship('BusRoute')
    stop = db.relationship('RouteStop')

    def to_dict(self):
        return {
            'id': self.id,
            'student_id': self.student_id,
            'student_name': self.student.full_name if self.student else None,
            'route_id': self.route_id,
            'route_name': self.route.name if self.route else None,
            'stop': self.stop.to_dict() if self.stop else None,
            'is_active': self.is_active,
        }


class DeviceToken(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    token = db.Column(db.String(300), nullable=False, unique=True)
    platform = db.Column(db.String(20), default='web')
    registered_at = db.Column(db.DateTime, default=datetime.utcnow)


def _iso(value):
    return value.isoformat() if value else None
