"""
Bilingual (fr/en) message templates for SMS and WhatsApp notifications
"""

TEMPLATES = {
    'bulletin_available': {
        'fr': ("EDUCAFRIC - {school_name}: le bulletin du {term} ({academic_year}) de {student_name} est disponible. "
               "Moyenne: {average}/20, rang {rank}/{class_size}. Code de vérification: {short_code}"),
        'en': ("EDUCAFRIC - {school_name}: {student_name}'s {term} ({academic_year}) report card is available. "
               "Average: {average}/20, rank {rank}/{class_size}. Verification code: {short_code}"),
    },
    'fee_reminder': {
        'fr': ("Cher parent, {student_name} a des frais scolaires impayés de {balance} à {school_name}. "
               "Merci de régulariser pour éviter tout désagrément."),
        'en': ("Dear Parent, {student_name} has outstanding school fees of {balance} at {school_name}. "
               "Please pay to avoid inconvenience."),
    },
    'bus_enrollment': {
        'fr': ("Votre enfant {student_name} a été inscrit au bus scolaire de {school_name}, "
               "itinéraire {route_name}, arrêt {stop_name}."),
        'en': ("Your child {student_name} has been enrolled in the {school_name} school bus service, "
               "route {route_name}, stop {stop_name}."),
    },
    'bus_unenrollment': {
        'fr': "Votre enfant {student_name} a été désinscrit du service de bus scolaire de {school_name}.",
        'en': "Your child {student_name} has been unenrolled from the {school_name} school bus service.",
    },
    'bus_route_change': {
        'fr': ("L'itinéraire de bus de votre enfant {student_name} à {school_name} a été modifié: "
               "{route_name}, arrêt {stop_name}."),
        'en': ("The bus route for your child {student_name} at {school_name} has been changed: "
               "{route_name}, stop {stop_name}."),
    },
    'bus_arrival': {
        'fr': "Le bus {plate_number} arrive à l'arrêt {stop_name} pour {student_name}.",
        'en': "Bus {plate_number} is arriving at stop {stop_name} for {student_name}.",
    },
    'subscription_reminder': {
        'fr': "Votre abonnement EDUCAFRIC expire dans {days} jours. Renouvelez pour éviter une interruption.",
        'en': "Your EDUCAFRIC subscription will expire in {days} days. Please renew to avoid service interruption.",
    },
    'subscription_expired': {
        'fr': "Votre abonnement EDUCAFRIC a expiré. Contactez le support pour le renouveler.",
        'en': "Your EDUCAFRIC subscription has expired. Please contact support to renew your subscription.",
    },
}


def render(name, language='fr', **context):
    variants = TEMPLATES[name]
    template = variants.get(language) or variants['fr']
    return template.format(**context)


def format_xaf(amount):
    """Format an amount in CFA francs with space thousands separators"""
    return "{:,} FCFA".format(int(round(amount or 0))).replace(',', ' ')
