from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_create_properties'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'properties',
        sa.Column('id', sa.String(32), primary_key=True),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('slug', sa.String(255), nullable=False, unique=True),
        sa.Column('description', sa.Text, nullable=False, server_default=''),
        sa.Column('location', sa.String(255), nullable=False, server_default=''),
        sa.Column('property_type', sa.String(50), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('price', sa.Float, nullable=False, server_default='0'),
        sa.Column('bedrooms', sa.Integer),
        sa.Column('bathrooms', sa.Integer),
        sa.Column('size_sqm', sa.Float),
        sa.Column('amenities', sa.JSON, nullable=False),
        sa.Column('images', sa.JSON, nullable=False),
        sa.Column('coordinates', sa.JSON),
        sa.Column('featured', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, nullable=False, server_default=sa.func.now())
    )
    op.create_index('idx_properties_created', 'properties', ['created_at', 'id'])
    op.create_index('idx_properties_status_created', 'properties', ['status', 'created_at'])
    op.create_index('idx_properties_featured_status', 'properties', ['featured', 'status'])


def downgrade():
    op.drop_table('properties')
