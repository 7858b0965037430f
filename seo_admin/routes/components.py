from flask import Blueprint, current_app, flash, redirect, render_template, request, session, url_for
from flask_login import login_required

from ..auth import current_session
from ..backend import BackendError, BackendValidationError, get_backend
from ..sections import NothingToSave, SectionEditor, SectionRegistry, UnknownSection
from ..utils import validate_uploaded_image
from .admin import PAGE_KIND_LABELS, page_type_for

components_bp = Blueprint('components', __name__)


def editor_for(kind, page_id):
    return SectionEditor(
        get_backend(),
        current_session(),
        page_id,
        page_type_for(kind),
        SectionRegistry(session),
        max_workers=current_app.config.get('SECTION_FETCH_WORKERS', 8),
        log=current_app.logger,
    )


def _section_url(kind, page_id, section_kind):
    return url_for('components.edit_components', kind=kind, page_id=page_id) + f'#section-{section_kind}'


@components_bp.route('/<kind>/<int:page_id>/components')
@login_required
def edit_components(kind, page_id):
    snapshot = editor_for(kind, page_id).load()
    return render_template(
        'pages/components.html',
        kind=kind,
        kind_label=PAGE_KIND_LABELS[kind],
        page_id=page_id,
        snapshot=snapshot,
    )


@components_bp.route('/<kind>/<int:page_id>/components/<section>', methods=['POST'])
@login_required
def save_component(kind, page_id, section):
    editor = editor_for(kind, page_id)
    try:
        spec = editor.spec_for(section)
    except UnknownSection:
        flash('Unknown section.', 'danger')
        return redirect(url_for('components.edit_components', kind=kind, page_id=page_id))

    upload = request.files.get(spec.file_field) if spec.file_field else None
    if upload is not None and upload.filename and not validate_uploaded_image(upload):
        flash('Upload a valid PNG, JPG, GIF or WEBP image.', 'danger')
        return redirect(_section_url(kind, page_id, section))

    try:
        state, _saved = editor.save(section, request.form, files=request.files, known_id=request.form.get('section_id'))
    except NothingToSave as exc:
        flash(str(exc), 'warning')
    except BackendValidationError as exc:
        current_app.logger.warning('Section %s of page %s rejected: %s', section, page_id, exc.field_errors)
        details = '; '.join(message for messages in exc.field_errors.values() for message in messages)
        flash(f'Failed to save section: {details or exc.message}', 'danger')
    except BackendError as exc:
        current_app.logger.error('Failed to save section %s of page %s: %s', section, page_id, exc.message)
        flash('Failed to save section', 'danger')
    else:
        current_app.logger.info('Saved section %s of page %s (%r).', section, page_id, state)
        flash('Section updated successfully', 'success')
    return redirect(_section_url(kind, page_id, section))
